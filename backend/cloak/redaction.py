from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from presidio_analyzer import PatternRecognizer

from cloak.pii_detector import (
    NAME_TYPES,
    GroupedCardRecognizer,
    NameHeuristics,
    PIIScanResult,
    PIIType,
    ValidatingPatternRecognizer,
    find_matches,
    valid_ipv4,
)

# Matches placeholders like [EMAIL_1], [POSSIBLE_NAME_12], [IP_ADDRESS_3].
_PLACEHOLDER_RE = re.compile(r"\[([A-Z][A-Z0-9_]*_\d+)\]")


@dataclass
class RedactionMap:
    """Short-lived mapping between detected values and placeholder tokens.

    Built per request from a scan result and handed to downstream AI-assisted
    features; it is never persisted with the report.
    """

    # original value -> placeholder
    _forward: dict[str, str] = field(default_factory=dict)
    # placeholder -> original value
    _reverse: dict[str, str] = field(default_factory=dict)
    # label -> next counter
    _counters: dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self._reverse)

    def placeholder_for(self, value: str, label: str) -> str:
        """Return the placeholder for *value*, creating ``[LABEL_N]`` if new."""
        if value in self._forward:
            return self._forward[value]

        counter = self._counters.get(label, 0) + 1
        self._counters[label] = counter
        placeholder = f"[{label}_{counter}]"

        self._forward[value] = placeholder
        self._reverse[placeholder] = value
        return placeholder

    def original_for(self, placeholder: str) -> str | None:
        return self._reverse.get(placeholder)

    def placeholders(self) -> dict[str, str]:
        """Placeholder -> original value, in creation order."""
        return dict(self._reverse)

    def restore(self, text: str) -> str:
        """Replace every known placeholder in *text* with its original value.

        Longer tokens go first so ``[EMAIL_10]`` is not clobbered by
        ``[EMAIL_1]``.  Unknown placeholders are left untouched.
        """
        found = _PLACEHOLDER_RE.findall(text)
        if not found:
            return text

        result = text
        for raw in sorted(set(found), key=len, reverse=True):
            bracketed = f"[{raw}]"
            original = self._reverse.get(bracketed)
            if original is not None:
                result = result.replace(bracketed, original)
        return result


# ---------------------------------------------------------------------------
# Redaction pattern set
# ---------------------------------------------------------------------------

EMAIL_TLDS: tuple[str, ...] = (
    "com", "org", "net", "edu", "gov", "co.uk", "ac.uk", "io", "ai", "app",
    "dev", "tech", "uk", "us", "ca", "eu", "de", "fr", "es", "it", "nl", "au",
    "nz", "jp", "cn", "in", "br", "mx",
)

IBAN_LENGTHS: dict[str, int] = {
    "GB": 22, "DE": 22, "FR": 27, "IT": 27, "ES": 24, "NL": 18, "BE": 16,
    "IE": 22, "PT": 25, "AT": 20, "CH": 21, "SE": 24, "DK": 18, "NO": 15,
}

_NI_INVALID_PREFIXES = frozenset({"BG", "GB", "NK", "KN", "TN", "NT", "ZZ"})

# Two capitalised words that are greetings or places, not people.
REDACTION_NON_NAMES: tuple[str, ...] = ("Dear Sir", "Dear Madam")

_PLACE_PREPOSITION_RE = re.compile(r"\b(?:at|in|near|from|to)\s*$", re.IGNORECASE)


def email_tld_valid(value: str) -> bool:
    lowered = value.lower()
    return any(lowered.endswith("." + tld) for tld in EMAIL_TLDS)


def ni_number_valid(value: str) -> bool:
    """UK National Insurance number prefix rules."""
    normalized = "".join(value.split()).upper()
    if len(normalized) < 2 or normalized[:2] in _NI_INVALID_PREFIXES:
        return False
    return normalized[0] not in "DFIQUV" and normalized[1] not in "DFOQUV"


def iban_valid(value: str) -> bool:
    """Country length (where known) plus the ISO 13616 mod-97 checksum."""
    normalized = "".join(value.split()).upper()
    if not re.fullmatch(r"[A-Z]{2}\d{2}[A-Z0-9]+", normalized):
        return False
    expected = IBAN_LENGTHS.get(normalized[:2])
    if expected is not None and len(normalized) != expected:
        return False
    rearranged = normalized[4:] + normalized[:4]
    return int("".join(str(int(char, 36)) for char in rearranged)) % 97 == 1


def nhs_number_valid(value: str) -> bool:
    """Ten digits whose last one is the modulus-11 check digit."""
    digits = [int(char) for char in value if char.isdigit()]
    if len(digits) != 10:
        return False
    total = sum(digit * weight for digit, weight in zip(digits[:9], range(10, 1, -1)))
    check = 11 - total % 11
    if check == 11:
        check = 0
    return check != 10 and check == digits[9]


@dataclass(frozen=True)
class RedactionPattern:
    """A labelled recognizer; higher priority claims overlapping text first."""

    label: str
    recognizer: PatternRecognizer
    priority: int


def redaction_pattern(
    label: str,
    regex: str,
    priority: int,
    validator: Optional[Callable[[str], bool]] = None,
    ignore_case: bool = False,
) -> RedactionPattern:
    recognizer = ValidatingPatternRecognizer(
        label, regex, validator=validator, ignore_case=ignore_case
    )
    return RedactionPattern(label, recognizer, priority)


REDACTION_PATTERNS: tuple[RedactionPattern, ...] = (
    # Structured identifiers
    redaction_pattern(
        "EMAIL",
        r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
        100,
        validator=email_tld_valid,
    ),
    redaction_pattern(
        "EMPLOYEE_ID",
        r"\b(?:EMP|EMPL|ID|Employee\s*ID|Staff\s*ID|Personnel)[:\s#-]*"
        r"(?=[A-Z]*\d)[A-Z0-9]{4,12}\b",
        100,
        ignore_case=True,
    ),
    redaction_pattern("SSN", r"\b\d{3}-\d{2}-\d{4}\b", 100),
    redaction_pattern(
        "NI_NUMBER",
        r"\b[A-CEGHJ-PR-TW-Z][A-CEGHJ-NPR-TW-Z]\s?\d{2}\s?\d{2}\s?\d{2}\s?[A-D]\b",
        100,
        validator=ni_number_valid,
        ignore_case=True,
    ),
    RedactionPattern("CREDIT_CARD", GroupedCardRecognizer(), 100),
    redaction_pattern(
        "IBAN",
        r"\b[A-Z]{2}\d{2}\s?(?:[A-Z0-9]{4}\s?){2,7}[A-Z0-9]{1,4}\b",
        100,
        validator=iban_valid,
        ignore_case=True,
    ),
    # Phone numbers
    redaction_pattern("PHONE_UK_LANDLINE", r"\b0\d{2,4}\s?\d{3,4}\s?\d{3,4}\b", 90),
    redaction_pattern("PHONE_UK_MOBILE", r"(?<![\w+])(?:0|\+?44\s?)7\d{3}\s?\d{6}\b", 90),
    redaction_pattern(
        "PHONE_US", r"\b(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b", 90
    ),
    redaction_pattern(
        "PHONE_INTL",
        r"(?<![\w+])\+\d{1,3}[\s.-]?\(?\d{1,4}\)?[\s.-]?\d{1,4}[\s.-]?\d{1,9}\b",
        85,
    ),
    # Government identifiers
    redaction_pattern("PASSPORT_UK", r"\b\d{9}[A-Z]{3}\b", 80),
    redaction_pattern("PASSPORT_US", r"\b[A-Z]{1,2}\d{7,9}\b", 80),
    redaction_pattern("DRIVERS_LICENSE_UK", r"\b[A-Z]{5}\d{6}[A-Z]{2}\d[A-Z]{2}\b", 80),
    redaction_pattern(
        "NHS_NUMBER", r"\b\d{3}\s?\d{3}\s?\d{4}\b", 80, validator=nhs_number_valid
    ),
    # Financial identifiers
    redaction_pattern("BANK_ACCOUNT_UK", r"\b\d{8}\b", 70),
    redaction_pattern("SORT_CODE_UK", r"\b\d{2}-\d{2}-\d{2}\b", 70),
    # Location data
    redaction_pattern(
        "POSTCODE_UK", r"\b[A-Z]{1,2}\d{1,2}[A-Z]?\s?\d[A-Z]{2}\b", 60, ignore_case=True
    ),
    redaction_pattern("POSTCODE_US", r"\b\d{5}(?:-\d{4})?\b", 60),
    redaction_pattern(
        "IP_ADDRESS", r"\b(?:\d{1,3}\.){3}\d{1,3}\b", 60, validator=valid_ipv4
    ),
    redaction_pattern(
        "IPV6_ADDRESS", r"\b(?:[A-F0-9]{1,4}:){7}[A-F0-9]{1,4}\b", 60, ignore_case=True
    ),
    redaction_pattern("MAC_ADDRESS", r"\b(?:[0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}\b", 60),
    # Dates
    redaction_pattern(
        "DATE",
        r"\b(?:(?:19|20)\d{2}[-/](?:0?[1-9]|1[0-2])[-/](?:0?[1-9]|[12]\d|3[01])"
        r"|(?:0?[1-9]|[12]\d|3[01])[-/](?:0?[1-9]|1[0-2])[-/](?:19|20)\d{2})\b",
        50,
    ),
    redaction_pattern(
        "DATE_OF_BIRTH",
        r"\b(?:DOB|Date of Birth|Born)[\s:]+\d{1,2}[-/]\d{1,2}[-/]\d{2,4}\b",
        49,
        ignore_case=True,
    ),
    redaction_pattern("URL_WITH_EMAIL", r"https?://\S*@\S*", 40),
)

# A full street address outranks the postcode inside it.
ADDRESS_PATTERN = redaction_pattern(
    "ADDRESS",
    r"\b\d+[\w\s,]{1,60}?(?:Street|Road|Avenue|Lane|Drive|Close|Way|Court|Place|"
    r"Square|Gardens|Terrace|Hill|Park|Crescent)[^.]{0,60}?"
    r"[A-Z]{1,2}\d{1,2}[A-Z]?\s?\d[A-Z]{2}\b",
    65,
    ignore_case=True,
)

NAME_PATTERN = redaction_pattern("NAME", r"\b[A-Z][a-z]{2,}\s+[A-Z][a-z]{2,}\b", 30)

# Detections from a scan fill in whatever the pattern set did not claim.
SCAN_PRIORITY = 0


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Candidate:
    start: int
    end: int
    label: str
    priority: int


@dataclass
class RedactionResult:
    text: str
    redaction_map: RedactionMap
    detection_stats: dict[str, int] = field(default_factory=dict)

    @property
    def pii_detected(self) -> bool:
        return len(self.redaction_map) > 0


def _is_person_name(
    text: str, start: int, end: int, heuristics: NameHeuristics
) -> bool:
    candidate = text[start:end]
    if candidate in REDACTION_NON_NAMES or heuristics.is_known_non_name(candidate):
        return False
    # "in Central Park", "from Head Office"
    return _PLACE_PREPOSITION_RE.search(text[max(0, start - 10):start]) is None


def _resolve(candidates: list[_Candidate]) -> list[_Candidate]:
    # Highest priority first, then earliest start, then longest span.
    ordered = sorted(
        candidates, key=lambda c: (-c.priority, c.start, -(c.end - c.start))
    )
    claimed: list[_Candidate] = []
    for candidate in ordered:
        if all(candidate.end <= c.start or candidate.start >= c.end for c in claimed):
            claimed.append(candidate)
    return sorted(claimed, key=lambda c: c.start)


def redact(
    text: str,
    scan: PIIScanResult | None = None,
    *,
    patterns: Sequence[RedactionPattern] = REDACTION_PATTERNS,
    include_names: bool = True,
    include_addresses: bool = True,
    custom_patterns: Sequence[RedactionPattern] = (),
    heuristics: NameHeuristics | None = None,
    redaction_map: RedactionMap | None = None,
) -> RedactionResult:
    """Replace PII in *text* with ``[LABEL_N]`` placeholders.

    Candidates come from the pattern set, *custom_patterns*, the optional
    name and address grammars, and the detections of *scan*.  Where they
    overlap the higher priority wins, then the earlier and longer span.
    Placeholders are numbered per label in reading order and a repeated value
    reuses its placeholder.
    """
    heuristics = heuristics or NameHeuristics()
    redaction_map = redaction_map if redaction_map is not None else RedactionMap()

    active = list(patterns) + list(custom_patterns)
    if include_addresses:
        active.append(ADDRESS_PATTERN)
    if include_names:
        active.append(NAME_PATTERN)

    candidates: list[_Candidate] = []
    for pattern in active:
        for result in find_matches(pattern.recognizer, text):
            if pattern is NAME_PATTERN and not _is_person_name(
                text, result.start, result.end, heuristics
            ):
                continue
            candidates.append(
                _Candidate(result.start, result.end, pattern.label, pattern.priority)
            )

    if scan is not None:
        for detection in scan.detections:
            if detection.type in NAME_TYPES and not include_names:
                continue
            if detection.type is PIIType.ADDRESS and not include_addresses:
                continue
            candidates.append(
                _Candidate(
                    detection.start,
                    detection.end,
                    detection.type.value.upper(),
                    SCAN_PRIORITY,
                )
            )

    spans = _resolve(candidates)

    stats: dict[str, int] = {}
    tokens: list[str] = []
    for span in spans:
        known = len(redaction_map)
        tokens.append(redaction_map.placeholder_for(text[span.start:span.end], span.label))
        if len(redaction_map) > known:
            stats[span.label] = stats.get(span.label, 0) + 1

    result = text
    for span, token in reversed(list(zip(spans, tokens))):
        result = result[: span.start] + token + result[span.end :]
    return RedactionResult(text=result, redaction_map=redaction_map, detection_stats=stats)
