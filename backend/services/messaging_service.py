from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from cloak.encryption import TenantCrypto
from cloak.errors import RateLimitExceededError, ReportNotFoundError
from cloak.rate_limiter import MESSAGING, RateLimiter
from db import repositories

logger = logging.getLogger(__name__)

TRACKING_ID_RE = re.compile(r"^DIS-[A-Z0-9]{8}$")
_UNSAFE_CONTENT_RE = re.compile(
    r"<script|<iframe|javascript:|onerror=|onload=", re.IGNORECASE
)
_WHITESPACE_RE = re.compile(r"\s+")

WHISTLEBLOWER_SENDER = "whistleblower"


@dataclass(frozen=True)
class DecryptedMessage:
    id: UUID
    sender_type: str
    message: str
    is_read: bool
    created_at: datetime


def normalize_tracking_id(raw: str) -> str:
    """Upper-case and strip whitespace; ``ValueError`` if the shape is wrong."""
    tracking_id = _WHITESPACE_RE.sub("", raw or "").upper()
    if not TRACKING_ID_RE.match(tracking_id):
        raise ValueError("Invalid tracking ID format")
    return tracking_id


def validate_message(message: str | None, max_length: int = 2000) -> str:
    if message is None or not message.strip():
        raise ValueError("Message cannot be empty")
    message = message.strip()
    if len(message) > max_length:
        raise ValueError(f"Message too long (max {max_length} characters)")
    if _UNSAFE_CONTENT_RE.search(message):
        raise ValueError("Message contains disallowed content")
    return message


class MessagingService:
    """Two-way anonymous messaging keyed by tracking id.

    Message bodies are sealed with the same organization key as the parent
    report.  A body that fails authentication raises ``DecryptionError``.
    """

    def __init__(
        self,
        crypto: TenantCrypto,
        limiter: RateLimiter,
        max_length: int = 2000,
        history_limit: int = 100,
    ) -> None:
        self._crypto = crypto
        self._limiter = limiter
        self._max_length = max_length
        self._history_limit = history_limit

    async def _get_report(self, db: AsyncSession, tracking_id: str):
        report = await repositories.get_report_by_tracking_id(db, tracking_id)
        if report is None:
            raise ReportNotFoundError(tracking_id)
        return report

    async def load(self, db: AsyncSession, raw_tracking_id: str) -> list[DecryptedMessage]:
        tracking_id = normalize_tracking_id(raw_tracking_id)
        report = await self._get_report(db, tracking_id)
        organization_id = str(report.organization_id)

        rows = await repositories.get_messages(db, report.id, limit=self._history_limit)
        messages = [
            DecryptedMessage(
                id=row.id,
                sender_type=row.sender_type,
                message=self._crypto.decrypt_text(organization_id, row.encrypted_message),
                is_read=bool(row.is_read),
                created_at=row.created_at,
            )
            for row in rows
        ]
        logger.info("Loaded %d messages for report %s", len(messages), tracking_id)
        return messages

    async def send(
        self, db: AsyncSession, raw_tracking_id: str, message: str | None
    ) -> DecryptedMessage:
        tracking_id = normalize_tracking_id(raw_tracking_id)
        body = validate_message(message, self._max_length)

        result = await self._limiter.check_limit(tracking_id, MESSAGING)
        if not result.allowed:
            logger.warning("Messaging rate limit hit for report %s", tracking_id)
            raise RateLimitExceededError(result)

        report = await self._get_report(db, tracking_id)
        encrypted = self._crypto.encrypt_text(str(report.organization_id), body)
        row = await repositories.create_message(
            db,
            report_id=report.id,
            sender_type=WHISTLEBLOWER_SENDER,
            encrypted_message=encrypted,
        )
        logger.info("Stored whistleblower message for report %s", tracking_id)
        return DecryptedMessage(
            id=row.id,
            sender_type=row.sender_type,
            message=body,
            is_read=bool(row.is_read),
            created_at=row.created_at,
        )
