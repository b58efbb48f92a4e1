"""HTTP client for the hosted, NLP-assisted PII detection service.

Only used for organizations that have the ``use_external_pii_detector``
feature flag switched on.  Any failure here is raised as
``ExternalDetectorError`` so the caller can fall back to the legacy pattern
detector; detection never blocks a submission.
"""

from __future__ import annotations

import logging
import re

import httpx

from cloak.errors import ExternalDetectorError
from cloak.pii_detector import PIIDetection, PIIScanResult, PIIType, Severity

logger = logging.getLogger(__name__)

# External entity type -> local category.
EXTERNAL_TYPE_MAP: dict[str, PIIType] = {
    "EMAIL": PIIType.EMAIL,
    "EMAIL_ADDRESS": PIIType.EMAIL,
    "PHONE": PIIType.PHONE,
    "PHONE_NUMBER": PIIType.PHONE,
    "PHONE_US": PIIType.PHONE,
    "PHONE_UK_MOBILE": PIIType.PHONE,
    "PHONE_UK_LANDLINE": PIIType.PHONE,
    "PHONE_INTL": PIIType.PHONE,
    "EMPLOYEE_ID": PIIType.EMPLOYEE_ID,
    "SSN": PIIType.SSN,
    "US_SSN": PIIType.SSN,
    "CREDIT_CARD": PIIType.CREDIT_CARD,
    "IP_ADDRESS": PIIType.IP_ADDRESS,
    "IPV6_ADDRESS": PIIType.IP_ADDRESS,
    "URL": PIIType.URL,
    "URL_WITH_EMAIL": PIIType.URL,
    "NAME": PIIType.POSSIBLE_NAME,
    "PERSON": PIIType.POSSIBLE_NAME,
    "PERSON_NAME": PIIType.POSSIBLE_NAME,
    "DATE": PIIType.SPECIFIC_DATE,
    "DATE_OF_BIRTH": PIIType.SPECIFIC_DATE,
    "ADDRESS": PIIType.ADDRESS,
    "LOCATION": PIIType.ADDRESS,
    "POSTCODE_UK": PIIType.ADDRESS,
    "POSTCODE_US": PIIType.ADDRESS,
}

SEVERITY_BY_TYPE: dict[PIIType, Severity] = {
    PIIType.EMAIL: Severity.HIGH,
    PIIType.PHONE: Severity.HIGH,
    PIIType.EMPLOYEE_ID: Severity.HIGH,
    PIIType.SSN: Severity.HIGH,
    PIIType.CREDIT_CARD: Severity.MEDIUM,
    PIIType.IP_ADDRESS: Severity.MEDIUM,
    PIIType.URL: Severity.LOW,
    PIIType.POSSIBLE_NAME: Severity.HIGH,
    PIIType.STANDALONE_NAME: Severity.MEDIUM,
    PIIType.SPECIFIC_DATE: Severity.LOW,
    PIIType.ADDRESS: Severity.HIGH,
}


# Labels with no known category are kept as generic identifiers.
UNMAPPED_EXTERNAL_TYPE = PIIType.EMPLOYEE_ID

# Whole-token keywords for labels missing from EXTERNAL_TYPE_MAP.
EXTERNAL_TYPE_KEYWORDS: tuple[tuple[str, PIIType], ...] = (
    ("PHONE", PIIType.PHONE),
    ("MOBILE", PIIType.PHONE),
    ("EMAIL", PIIType.EMAIL),
    ("NAME", PIIType.POSSIBLE_NAME),
    ("PERSON", PIIType.POSSIBLE_NAME),
    ("ADDRESS", PIIType.ADDRESS),
    ("POSTCODE", PIIType.ADDRESS),
    ("ZIP", PIIType.ADDRESS),
    ("DATE", PIIType.SPECIFIC_DATE),
    ("DOB", PIIType.SPECIFIC_DATE),
    ("CARD", PIIType.CREDIT_CARD),
    ("IP", PIIType.IP_ADDRESS),
    ("IPV4", PIIType.IP_ADDRESS),
    ("IPV6", PIIType.IP_ADDRESS),
    ("URL", PIIType.URL),
)


def map_external_type(raw_type: str) -> PIIType:
    """Map an external entity label onto a local category.

    Unknown labels are matched keyword by keyword against their
    ``_``-separated tokens, so ``ZIP_CODE`` is an address and not an IP.
    Anything still unmatched falls back to ``UNMAPPED_EXTERNAL_TYPE``
    (high severity) rather than being dropped.
    """
    label = (raw_type or "").strip().upper()
    if label in EXTERNAL_TYPE_MAP:
        return EXTERNAL_TYPE_MAP[label]
    tokens = set(re.split(r"[_\s-]+", label))
    for keyword, pii_type in EXTERNAL_TYPE_KEYWORDS:
        if keyword in tokens:
            return pii_type
    return UNMAPPED_EXTERNAL_TYPE


class ExternalDetector:
    """Calls ``POST {base_url}/v1/ai-detect`` and adapts the response."""

    name = "external"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        enable_ai: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._enable_ai = enable_ai
        self._transport = transport

    async def detect(self, text: str) -> PIIScanResult:
        if not isinstance(text, str) or not text:
            return PIIScanResult.empty()

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["x-api-key"] = self._api_key

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/v1/ai-detect",
                    json={"text": text, "enable_ai": self._enable_ai},
                    headers=headers,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise ExternalDetectorError(
                f"External detector returned HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalDetectorError(f"External detector call failed: {exc}") from exc

        return self._to_result(text, data)

    @staticmethod
    def _to_result(text: str, data: object) -> PIIScanResult:
        if not isinstance(data, dict):
            raise ExternalDetectorError("External detector response is not an object")
        entities = data.get("entities") or []
        if not isinstance(entities, list):
            raise ExternalDetectorError("External detector 'entities' is not a list")

        detections: list[PIIDetection] = []
        seen: set[tuple[int, int, PIIType]] = set()
        for entity in entities:
            try:
                start = int(entity["start"])
                end = int(entity["end"])
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping external entity without a usable span")
                continue
            if not 0 <= start < end <= len(text):
                logger.warning("Skipping external entity with out-of-range span")
                continue

            pii_type = map_external_type(str(entity.get("type", "")))
            key = (start, end, pii_type)
            if key in seen:
                continue
            seen.add(key)
            detections.append(
                PIIDetection(
                    type=pii_type,
                    text=text[start:end],
                    start=start,
                    end=end,
                    severity=SEVERITY_BY_TYPE[pii_type],
                    description=f"Detected by external service ({entity.get('type', 'unknown')})",
                )
            )
        return PIIScanResult(detections=tuple(detections))
