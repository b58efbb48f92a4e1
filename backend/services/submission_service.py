"""Anonymous report submission: rate limit, scan, encrypt, persist.

The PII scan is advisory and never gates encryption; both see the same
plaintext.  Encryption failure aborts before anything touches the database,
and the report insert plus the link usage increment commit together or not
at all.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from cloak.encryption import TenantCrypto
from cloak.errors import ConfigurationError, InvalidLinkError
from cloak.pii_detector import PIIScanResult
from cloak.rate_limiter import REPORT_SUBMISSION, RateLimiter, RateLimitResult
from cloak.scanner import PIIScanner
from db import repositories
from db.models import OrganizationLink, Report
from schemas.api import ReportSubmission

logger = logging.getLogger(__name__)

TRACKING_ID_PREFIX = "DIS-"
TRACKING_ID_ALPHABET = string.ascii_uppercase + string.digits
TRACKING_ID_LENGTH = 8
MAX_TRACKING_ID_ATTEMPTS = 5


class SubmissionState(str, Enum):
    RECEIVED = "received"
    RATE_LIMIT_CHECKED = "rate_limit_checked"
    PAYLOAD_SCANNED = "payload_scanned"
    PAYLOAD_ENCRYPTED = "payload_encrypted"
    PERSISTED = "persisted"
    # early exits
    RATE_LIMITED = "rate_limited"
    INVALID_LINK = "invalid_link"
    ENCRYPTION_CONFIG_ERROR = "encryption_config_error"
    PERSISTENCE_FAILED = "persistence_failed"


TERMINAL_STATES = frozenset(
    {
        SubmissionState.PERSISTED,
        SubmissionState.RATE_LIMITED,
        SubmissionState.INVALID_LINK,
        SubmissionState.ENCRYPTION_CONFIG_ERROR,
        SubmissionState.PERSISTENCE_FAILED,
    }
)


@dataclass
class SubmissionOutcome:
    state: SubmissionState = SubmissionState.RECEIVED
    history: list[SubmissionState] = field(
        default_factory=lambda: [SubmissionState.RECEIVED]
    )
    rate_limit: RateLimitResult | None = None
    scan: PIIScanResult = field(default_factory=PIIScanResult.empty)
    invalid_link_reason: str | None = None
    tracking_id: str | None = None
    created_at: datetime | None = None

    def advance(self, state: SubmissionState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Submission already finished in state {self.state.value}")
        self.state = state
        self.history.append(state)

    @property
    def succeeded(self) -> bool:
        return self.state is SubmissionState.PERSISTED


def generate_tracking_id() -> str:
    """``DIS-`` plus 8 random uppercase alphanumerics, from a CSPRNG."""
    suffix = "".join(
        secrets.choice(TRACKING_ID_ALPHABET) for _ in range(TRACKING_ID_LENGTH)
    )
    return TRACKING_ID_PREFIX + suffix


def check_link(link: OrganizationLink | None, now: datetime | None = None) -> None:
    """Raise ``InvalidLinkError`` unless *link* can accept a submission."""
    now = now or datetime.now(timezone.utc)
    if link is None:
        raise InvalidLinkError("not_found")
    if not link.is_active:
        raise InvalidLinkError("inactive")
    if link.expires_at is not None and link.expires_at < now:
        raise InvalidLinkError("expired")
    if link.usage_limit is not None and (link.usage_count or 0) >= link.usage_limit:
        raise InvalidLinkError("exhausted")


class SubmissionOrchestrator:
    """Runs one anonymous submission through the privacy pipeline."""

    def __init__(
        self,
        limiter: RateLimiter,
        scanner: PIIScanner,
        crypto: TenantCrypto,
    ) -> None:
        self._limiter = limiter
        self._scanner = scanner
        self._crypto = crypto

    async def submit(
        self,
        db: AsyncSession,
        submission: ReportSubmission,
        client_id: str,
    ) -> SubmissionOutcome:
        outcome = SubmissionOutcome()

        # 1. Admission control (fails open on store trouble)
        outcome.rate_limit = await self._limiter.check_limit(client_id, REPORT_SUBMISSION)
        if not outcome.rate_limit.allowed:
            outcome.advance(SubmissionState.RATE_LIMITED)
            return outcome
        outcome.advance(SubmissionState.RATE_LIMIT_CHECKED)

        # 2. Resolve the link token to an organization
        link = await repositories.get_link_by_token(db, submission.link_token)
        try:
            check_link(link)
        except InvalidLinkError as exc:
            logger.warning("Rejected submission: link %s", exc.reason)
            outcome.invalid_link_reason = exc.reason
            outcome.advance(SubmissionState.INVALID_LINK)
            return outcome
        organization_id = str(link.organization_id)

        # 3. Advisory PII scan; never raises
        outcome.scan = await self._scanner.scan_report_fields(
            submission.model_dump(), organization_id=organization_id
        )
        outcome.advance(SubmissionState.PAYLOAD_SCANNED)

        # 4. Encrypt; no secret means no submission
        try:
            encrypted_content = self._crypto.encrypt_json(
                organization_id, submission.confidential_payload()
            )
            key_hash = self._crypto.key_fingerprint(organization_id)
        except ConfigurationError:
            logger.critical(
                "Submission for organization %s refused: encryption is not configured",
                organization_id,
            )
            outcome.advance(SubmissionState.ENCRYPTION_CONFIG_ERROR)
            return outcome
        outcome.advance(SubmissionState.PAYLOAD_ENCRYPTED)

        # 5. Persist report + usage increment atomically
        try:
            report = await self._persist(
                db, link, submission, encrypted_content, key_hash, outcome.scan
            )
        except InvalidLinkError as exc:
            await db.rollback()
            logger.warning("Rejected submission: link %s at commit", exc.reason)
            outcome.invalid_link_reason = exc.reason
            outcome.advance(SubmissionState.INVALID_LINK)
            return outcome
        except asyncio.CancelledError:
            await db.rollback()
            logger.warning("Submission cancelled before commit; nothing persisted")
            raise
        except Exception:
            await db.rollback()
            logger.exception(
                "Failed to persist report for organization %s", organization_id
            )
            outcome.advance(SubmissionState.PERSISTENCE_FAILED)
            return outcome

        outcome.tracking_id = report.tracking_id
        outcome.created_at = report.created_at
        outcome.advance(SubmissionState.PERSISTED)
        logger.info(
            "Report %s persisted for organization %s (pii high=%d)",
            report.tracking_id,
            organization_id,
            outcome.scan.high_count,
        )
        return outcome

    async def _persist(
        self,
        db: AsyncSession,
        link: OrganizationLink,
        submission: ReportSubmission,
        encrypted_content: str,
        key_hash: str,
        scan: PIIScanResult,
    ) -> Report:
        tracking_id = await self._unique_tracking_id(db)
        report = await repositories.create_report(
            db,
            organization_id=link.organization_id,
            submitted_via_link_id=link.id,
            tracking_id=tracking_id,
            title=submission.title,
            report_type=submission.report_type,
            encrypted_content=encrypted_content,
            encryption_key_hash=key_hash,
            pii_scan_metadata=scan.to_metadata(),
            priority=submission.priority,
            tags=submission.tags,
        )
        if not await repositories.increment_link_usage(db, link.id):
            raise InvalidLinkError("exhausted")
        await db.commit()
        return report

    @staticmethod
    async def _unique_tracking_id(db: AsyncSession) -> str:
        for _ in range(MAX_TRACKING_ID_ATTEMPTS):
            tracking_id = generate_tracking_id()
            if not await repositories.tracking_id_exists(db, tracking_id):
                return tracking_id
        raise RuntimeError("Could not allocate a unique tracking id")
