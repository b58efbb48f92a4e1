from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Protocol

from presidio_analyzer import Pattern, PatternRecognizer, RecognizerResult
from presidio_analyzer.predefined_recognizers import CreditCardRecognizer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class PIIType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    EMPLOYEE_ID = "employee_id"
    SSN = "ssn"
    CREDIT_CARD = "credit_card"
    IP_ADDRESS = "ip_address"
    URL = "url"
    POSSIBLE_NAME = "possible_name"
    STANDALONE_NAME = "standalone_name"
    SPECIFIC_DATE = "specific_date"
    ADDRESS = "address"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


NAME_TYPES = frozenset({PIIType.POSSIBLE_NAME, PIIType.STANDALONE_NAME})


@dataclass(frozen=True)
class PIIDetection:
    """A single PII match.  ``text`` is the raw matched value and must never
    be logged or persisted."""

    type: PIIType
    text: str
    start: int
    end: int
    severity: Severity
    description: str

    @property
    def span(self) -> tuple[int, int]:
        return self.start, self.end

    def shifted(self, offset: int) -> "PIIDetection":
        return replace(self, start=self.start + offset, end=self.end + offset)


@dataclass(frozen=True)
class PIIScanResult:
    """Outcome of one scan, ordered by pattern table then position."""

    detections: tuple[PIIDetection, ...] = ()

    @classmethod
    def empty(cls) -> "PIIScanResult":
        return cls()

    @classmethod
    def merge(cls, parts: Iterable[tuple[int, "PIIScanResult"]]) -> "PIIScanResult":
        """Combine per-field results, shifting each by its field offset."""
        merged: list[PIIDetection] = []
        for offset, result in parts:
            merged.extend(d.shifted(offset) for d in result.detections)
        return cls(detections=tuple(merged))

    @property
    def has_pii(self) -> bool:
        return bool(self.detections)

    @property
    def counts_by_severity(self) -> dict[Severity, int]:
        counts = {severity: 0 for severity in Severity}
        for detection in self.detections:
            counts[detection.severity] += 1
        return counts

    @property
    def high_count(self) -> int:
        return self.counts_by_severity[Severity.HIGH]

    @property
    def medium_count(self) -> int:
        return self.counts_by_severity[Severity.MEDIUM]

    @property
    def low_count(self) -> int:
        return self.counts_by_severity[Severity.LOW]

    @property
    def types(self) -> list[str]:
        """Distinct detected categories, in first-seen order."""
        seen: dict[str, None] = {}
        for detection in self.detections:
            seen.setdefault(detection.type.value, None)
        return list(seen)

    def to_metadata(self) -> dict[str, Any]:
        """Aggregate view that is safe to persist and log (no matched text)."""
        return {
            "has_pii": self.has_pii,
            "high_count": self.high_count,
            "medium_count": self.medium_count,
            "low_count": self.low_count,
            "types": self.types,
        }


class PIIDetectorBackend(Protocol):
    """Anything that can turn text into a ``PIIScanResult``."""

    name: str

    async def detect(self, text: str) -> PIIScanResult:
        ...


# ---------------------------------------------------------------------------
# Recognizers
# ---------------------------------------------------------------------------

# Presidio compiles with IGNORECASE unless told otherwise; name and address
# grammars depend on capitalisation.
CASE_SENSITIVE_FLAGS = re.DOTALL | re.MULTILINE
CASE_INSENSITIVE_FLAGS = CASE_SENSITIVE_FLAGS | re.IGNORECASE


class ValidatingPatternRecognizer(PatternRecognizer):
    """Single-pattern recognizer whose matches must also pass *validator*."""

    def __init__(
        self,
        supported_entity: str,
        regex: str,
        score: float = 0.5,
        validator: Optional[Callable[[str], bool]] = None,
        ignore_case: bool = True,
    ) -> None:
        self._validator = validator
        super().__init__(
            supported_entity=supported_entity,
            name=f"{supported_entity.lower()}_recognizer",
            patterns=[
                Pattern(name=f"{supported_entity.lower()}_pattern", regex=regex, score=score)
            ],
            global_regex_flags=(
                CASE_INSENSITIVE_FLAGS if ignore_case else CASE_SENSITIVE_FLAGS
            ),
        )

    def validate_result(self, pattern_text: str) -> Optional[bool]:
        if self._validator is None:
            return None
        return self._validator(pattern_text)


class CueNameRecognizer(ValidatingPatternRecognizer):
    """Names introduced by a cue phrase; the reported span is the name alone.

    The pattern must define a ``name`` group.
    """

    def __init__(self, supported_entity: str, regex: str, score: float = 0.6) -> None:
        super().__init__(supported_entity, regex, score=score, ignore_case=False)
        self._cue_regex = re.compile(regex)

    def analyze(self, text, entities, nlp_artifacts=None, regex_flags=None):
        results = super().analyze(text, entities, nlp_artifacts, regex_flags)
        for result in results:
            match = self._cue_regex.match(text[result.start:result.end])
            if match is not None and match.start("name") >= 0:
                offset = result.start
                result.start = offset + match.start("name")
                result.end = offset + match.end("name")
        return results


class GroupedCardRecognizer(CreditCardRecognizer):
    """16-digit grouped card numbers; presidio's Luhn check gates each match."""

    def __init__(self) -> None:
        super().__init__(
            patterns=[
                Pattern(
                    name="credit_card_grouped",
                    regex=r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b",
                    score=0.3,
                )
            ],
            supported_entity=PIIType.CREDIT_CARD.value.upper(),
        )


def find_matches(recognizer: PatternRecognizer, text: str) -> List[RecognizerResult]:
    """Run one pattern recognizer over *text*; results in reading order."""
    results = recognizer.analyze(
        text, entities=recognizer.supported_entities, nlp_artifacts=None
    )
    return sorted(results, key=lambda r: (r.start, r.end))


def valid_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class PIICategory:
    """One row of the detection table: a recognizer plus how to report it."""

    type: PIIType
    recognizer: PatternRecognizer
    severity: Severity
    description: str


_MONTHS = (
    r"(?:January|February|March|April|May|June|July|August|September|"
    r"October|November|December)"
)

_STREET_SUFFIX = (
    r"(?:Street|St|Avenue|Ave|Road|Rd|Lane|Ln|Drive|Dr|Boulevard|Blvd|"
    r"Court|Ct|Place|Pl|Way|Circle|Cir)\.?"
)


def _recognizer(pii_type: PIIType, regex: str, **kwargs: Any) -> ValidatingPatternRecognizer:
    return ValidatingPatternRecognizer(pii_type.value.upper(), regex, **kwargs)


def default_categories() -> list[PIICategory]:
    """The detection table, in reporting order."""
    return [
        PIICategory(
            PIIType.EMAIL,
            _recognizer(PIIType.EMAIL, r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
            Severity.HIGH,
            "Email addresses can identify you",
        ),
        PIICategory(
            PIIType.PHONE,
            _recognizer(
                PIIType.PHONE,
                r"(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b",
            ),
            Severity.HIGH,
            "Phone numbers can identify you",
        ),
        PIICategory(
            PIIType.EMPLOYEE_ID,
            _recognizer(
                PIIType.EMPLOYEE_ID,
                r"\b(?:EMP|EMPLOYEE|ID|STAFF|OFFICE)[-_\s#:]*[A-Z0-9]{2,3}[-_]?\d{3,8}\b",
            ),
            Severity.HIGH,
            "Employee/Office IDs can identify you",
        ),
        PIICategory(
            PIIType.SSN,
            _recognizer(PIIType.SSN, r"\b\d{3}[-\s]?\d{2}[-\s]?\d{4}\b"),
            Severity.HIGH,
            "Social Security Numbers must be protected",
        ),
        PIICategory(
            PIIType.CREDIT_CARD,
            GroupedCardRecognizer(),
            Severity.MEDIUM,
            "Credit card numbers detected",
        ),
        PIICategory(
            PIIType.IP_ADDRESS,
            _recognizer(
                PIIType.IP_ADDRESS, r"\b(?:\d{1,3}\.){3}\d{1,3}\b", validator=valid_ipv4
            ),
            Severity.MEDIUM,
            "IP addresses can be used to trace you",
        ),
        PIICategory(
            PIIType.URL,
            _recognizer(PIIType.URL, r"https?://[^\s<>\"{}|\\^`\[\]]+", score=0.4),
            Severity.LOW,
            "URLs may contain identifying information",
        ),
        PIICategory(
            PIIType.POSSIBLE_NAME,
            CueNameRecognizer(
                PIIType.POSSIBLE_NAME.value.upper(),
                r"\b(?i:my\s+name\s+is|i\s+am|i'm|"
                r"my\s+(?:manager|supervisor|boss|colleague|coworker)|"
                r"mr\.|mrs\.|ms\.|dr\.)"
                r"\s+(?P<name>[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?)\b",
            ),
            Severity.HIGH,
            "Names detected - highly identifying",
        ),
        PIICategory(
            PIIType.STANDALONE_NAME,
            _recognizer(
                PIIType.STANDALONE_NAME,
                r"\b[A-Z][a-z]{2,}\s+[A-Z][a-z]{2,}(?:\s+[A-Z][a-z]{2,})?\b",
                score=0.3,
                ignore_case=False,
            ),
            Severity.MEDIUM,
            "Possible full name detected",
        ),
        PIICategory(
            PIIType.SPECIFIC_DATE,
            _recognizer(
                PIIType.SPECIFIC_DATE,
                rf"\b(?:on|since|from|started|joined|hired)\s+"
                rf"(?:{_MONTHS}\s+\d{{1,2}}|\d{{1,2}}\s+{_MONTHS}),?\s+\d{{4}}\b",
                score=0.4,
            ),
            Severity.LOW,
            "Specific dates (hire date, etc.) could narrow identification",
        ),
        PIICategory(
            PIIType.ADDRESS,
            _recognizer(
                PIIType.ADDRESS,
                rf"\b\d+\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\s+{_STREET_SUFFIX}"
                r"[,\s]+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*[,\s]+[A-Z]{2}\s+\d{5}(?:-\d{4})?\b",
                score=0.6,
                ignore_case=False,
            ),
            Severity.HIGH,
            "Street addresses can identify locations",
        ),
    ]


# ---------------------------------------------------------------------------
# Name false-positive heuristics
# ---------------------------------------------------------------------------

# Place names and business/compliance phrases that look like "Firstname Lastname".
DEFAULT_NON_NAME_PHRASES: tuple[str, ...] = (
    "New York", "United Kingdom", "United States", "Los Angeles",
    "San Francisco", "New Jersey", "New Mexico", "North Carolina",
    "South Carolina", "New Hampshire", "Rhode Island", "European Union",
    "Hiring Friends", "Fraudulent Expenses", "Data Protection",
    "Human Resources", "Chief Executive", "Client Services", "Team Lead",
    "Account Manager", "Senior Account", "Expense Report",
    "Financial Misconduct", "Workplace Behaviour", "Code of Conduct",
    "Policy Violation", "Internal Audit", "Compliance Issue",
)

DEFAULT_BUSINESS_TERMS: tuple[str, ...] = (
    "report", "expense", "fraud", "misconduct", "violation", "policy",
    "hiring", "recruitment", "process", "procedure", "system", "department",
)

DEFAULT_PERSONAL_CUES: tuple[str, ...] = (
    "my", "i am", "mr.", "mrs.", "ms.", "dr.", "professor", "manager",
    "supervisor",
)

DEFAULT_COMMON_FIRST_NAMES: tuple[str, ...] = (
    "john", "jane", "michael", "sarah", "david", "emily", "james", "mary",
    "robert", "lisa",
)


@dataclass
class NameHeuristics:
    """Tunable suppression rules for name detections.

    These are hand-tuned word lists and a fixed context window; they give no
    precision or recall guarantee.
    """

    context_window: int = 30
    non_name_phrases: tuple[str, ...] = DEFAULT_NON_NAME_PHRASES
    business_terms: tuple[str, ...] = DEFAULT_BUSINESS_TERMS
    personal_cues: tuple[str, ...] = DEFAULT_PERSONAL_CUES
    common_first_names: tuple[str, ...] = DEFAULT_COMMON_FIRST_NAMES
    # Two-word standalone matches with no cue and an unfamiliar first word
    # are dropped as well.
    require_cue_for_unknown_names: bool = True

    _phrase_re: re.Pattern[str] = field(init=False, repr=False)
    _cue_re: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._phrase_re = re.compile(
            "|".join(re.escape(p) for p in self.non_name_phrases) or r"(?!x)x",
            re.IGNORECASE,
        )
        self._cue_re = re.compile(
            r"\b(?:" + "|".join(re.escape(c) for c in self.personal_cues) + r")(?![a-z])"
            if self.personal_cues
            else r"(?!x)x"
        )

    def is_known_non_name(self, candidate: str) -> bool:
        return self._phrase_re.search(candidate) is not None

    def is_suppressed_standalone(self, text: str, start: int, end: int) -> bool:
        candidate = text[start:end]
        before = text[max(0, start - self.context_window):start].lower()
        after = text[end:end + self.context_window].lower()
        context = f"{before} {after}"
        has_cue = self._cue_re.search(before) is not None
        words = candidate.split()
        first_is_common = words[0].lower() in self.common_first_names

        candidate_lower = candidate.lower()
        business = any(
            term in context or term in candidate_lower for term in self.business_terms
        )
        if business and not has_cue:
            return not first_is_common

        if self.require_cue_for_unknown_names and not has_cue and len(words) == 2:
            return not first_is_common
        return False


# ---------------------------------------------------------------------------
# Legacy pattern detector
# ---------------------------------------------------------------------------


class LegacyPatternDetector:
    """Presidio pattern recognizers with name suppression as a post-filter.

    ``scan`` is a pure function of its input: no I/O, and it never raises.
    """

    name = "legacy"

    def __init__(
        self,
        categories: list[PIICategory] | None = None,
        heuristics: NameHeuristics | None = None,
    ) -> None:
        self._categories = categories if categories is not None else default_categories()
        self._heuristics = heuristics or NameHeuristics()

    async def detect(self, text: str) -> PIIScanResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.scan, text)

    def scan(self, text: Any) -> PIIScanResult:
        if not isinstance(text, str) or not text:
            return PIIScanResult.empty()
        try:
            return PIIScanResult(detections=tuple(self._scan(text)))
        except Exception:
            # Scanning is advisory; the text itself is deliberately not logged.
            logger.exception("PII scan failed on %d chars of input", len(text))
            return PIIScanResult.empty()

    def _scan(self, text: str) -> list[PIIDetection]:
        detections: list[PIIDetection] = []
        seen: set[tuple[int, int, PIIType]] = set()

        for category in self._categories:
            for result in find_matches(category.recognizer, text):
                key = (result.start, result.end, category.type)
                if key in seen:
                    continue
                matched = text[result.start:result.end]
                if not self._accept(category.type, text, matched, result.start, result.end):
                    continue
                seen.add(key)
                detections.append(
                    PIIDetection(
                        type=category.type,
                        text=matched,
                        start=result.start,
                        end=result.end,
                        severity=category.severity,
                        description=category.description,
                    )
                )
        return detections

    def _accept(
        self, pii_type: PIIType, text: str, matched: str, start: int, end: int
    ) -> bool:
        if pii_type not in NAME_TYPES:
            return True
        if self._heuristics.is_known_non_name(matched):
            return False
        if pii_type is PIIType.STANDALONE_NAME:
            return not self._heuristics.is_suppressed_standalone(text, start, end)
        return True
