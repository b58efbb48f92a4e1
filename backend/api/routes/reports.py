from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_client_id, get_submission_orchestrator
from cloak.errors import (
    ConfigurationError,
    InvalidLinkError,
    PersistenceError,
    RateLimitExceededError,
)
from db.database import get_db
from schemas.api import PIIScanSummary, ReportSubmission, SubmissionResponse
from services.submission_service import SubmissionOrchestrator, SubmissionState

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=SubmissionResponse, status_code=201)
async def submit_report(
    body: ReportSubmission,
    response: Response,
    db: AsyncSession = Depends(get_db),
    orchestrator: SubmissionOrchestrator = Depends(get_submission_orchestrator),
    client_id: str = Depends(get_client_id),
):
    """Submit an anonymous report through a public organization link."""
    outcome = await orchestrator.submit(db, body, client_id)

    if outcome.state is SubmissionState.RATE_LIMITED:
        raise RateLimitExceededError(outcome.rate_limit)
    if outcome.state is SubmissionState.INVALID_LINK:
        raise InvalidLinkError(outcome.invalid_link_reason or "unknown")
    if outcome.state is SubmissionState.ENCRYPTION_CONFIG_ERROR:
        raise ConfigurationError("Encryption is not configured")
    if outcome.state is not SubmissionState.PERSISTED:
        raise PersistenceError("Report could not be stored")

    if outcome.rate_limit is not None and not outcome.rate_limit.degraded:
        response.headers.update(outcome.rate_limit.headers())

    return SubmissionResponse(
        tracking_id=outcome.tracking_id,
        status="submitted",
        created_at=outcome.created_at,
        pii_summary=PIIScanSummary(**outcome.scan.to_metadata()),
    )
