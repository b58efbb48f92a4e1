from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from api.dependencies import enforce_general_api_limit, get_scanner
from cloak.redaction import redact
from cloak.scanner import PIIScanner
from schemas.api import (
    PIIDetectionResponse,
    PIIScanRequest,
    PIIScanResponse,
    PIIScanSummary,
    RedactRequest,
    RedactResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(enforce_general_api_limit)])


@router.post("/scan", response_model=PIIScanResponse)
async def scan_text(
    body: PIIScanRequest,
    scanner: PIIScanner = Depends(get_scanner),
):
    """Advisory PII preview for the submission form."""
    result = await scanner.scan(body.text, organization_id=body.organization_id)
    return PIIScanResponse(
        summary=PIIScanSummary(**result.to_metadata()),
        detections=[
            PIIDetectionResponse(
                type=d.type.value,
                severity=d.severity.value,
                start=d.start,
                end=d.end,
                description=d.description,
            )
            for d in result.detections
        ],
    )


@router.post("/redact", response_model=RedactResponse)
async def redact_text(
    body: RedactRequest,
    scanner: PIIScanner = Depends(get_scanner),
):
    """Replace detected PII with placeholders; the map is returned, never stored."""
    result = await scanner.scan(body.text, organization_id=body.organization_id)
    redaction = redact(
        body.text,
        result,
        include_names=body.include_names,
        include_addresses=body.include_addresses,
    )
    return RedactResponse(
        redacted_text=redaction.text,
        placeholders=redaction.redaction_map.placeholders(),
        detection_stats=redaction.detection_stats,
        summary=PIIScanSummary(**result.to_metadata()),
    )
