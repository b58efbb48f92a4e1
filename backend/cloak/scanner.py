from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from cloak.pii_detector import LegacyPatternDetector, PIIDetectorBackend, PIIScanResult

logger = logging.getLogger(__name__)

# Free-text report fields that are scanned, in this order.
REPORT_TEXT_FIELDS: tuple[str, ...] = (
    "title",
    "description",
    "incident_details",
    "location",
    "witnesses",
    "evidence",
    "additional_details",
)

FlagLookup = Callable[[Optional[str]], Awaitable[bool]]


class PIIScanner:
    """Chooses a detection backend per organization and never fails the caller.

    Fallback chain: external detector (only when the organization's feature
    flag is on) -> legacy pattern detector -> empty result.
    """

    def __init__(
        self,
        legacy: LegacyPatternDetector | None = None,
        external: PIIDetectorBackend | None = None,
        flag_lookup: FlagLookup | None = None,
        flag_timeout: float = 2.0,
    ) -> None:
        self._legacy = legacy or LegacyPatternDetector()
        self._external = external
        self._flag_lookup = flag_lookup
        self._flag_timeout = flag_timeout

    async def _external_enabled(self, organization_id: str | None) -> bool:
        if self._external is None or self._flag_lookup is None:
            return False
        try:
            return bool(
                await asyncio.wait_for(
                    self._flag_lookup(organization_id), timeout=self._flag_timeout
                )
            )
        except Exception as exc:
            logger.warning(
                "Feature flag lookup failed for organization %s, using legacy "
                "detector: %s",
                organization_id,
                exc,
            )
            return False

    async def _detect(self, text: str, use_external: bool) -> PIIScanResult:
        if use_external and self._external is not None:
            try:
                return await self._external.detect(text)
            except Exception as exc:
                logger.warning(
                    "External PII detector failed, falling back to legacy: %s", exc
                )
        return self._legacy.scan(text)

    async def scan(self, text: Any, organization_id: str | None = None) -> PIIScanResult:
        """Scan a single piece of text."""
        if not isinstance(text, str) or not text:
            return PIIScanResult.empty()
        try:
            use_external = await self._external_enabled(organization_id)
            return await self._detect(text, use_external)
        except Exception:
            logger.exception("PII scan failed; treating as no PII")
            return PIIScanResult.empty()

    async def scan_report_fields(
        self,
        fields: Mapping[str, Any],
        organization_id: str | None = None,
    ) -> PIIScanResult:
        """Scan every free-text report field and aggregate the detections.

        Spans are offsets into the fields joined by a one-character separator,
        in ``REPORT_TEXT_FIELDS`` order; empty and non-string fields are
        skipped.
        """
        try:
            use_external = await self._external_enabled(organization_id)
            parts: list[tuple[int, PIIScanResult]] = []
            offset = 0
            for name in REPORT_TEXT_FIELDS:
                value = fields.get(name)
                if not isinstance(value, str) or not value:
                    continue
                parts.append((offset, await self._detect(value, use_external)))
                offset += len(value) + 1
            result = PIIScanResult.merge(parts)
        except Exception:
            logger.exception("Report field scan failed; treating as no PII")
            return PIIScanResult.empty()

        if result.has_pii:
            logger.info(
                "PII scan: %d high, %d medium, %d low (types: %s)",
                result.high_count,
                result.medium_count,
                result.low_count,
                ", ".join(result.types),
            )
        return result
