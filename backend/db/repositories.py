import logging
import uuid

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import OrganizationLink, Report, ReportMessage, FeatureFlag

logger = logging.getLogger(__name__)

ARCHIVED_STATUS = "archived"


# ---------------------------------------------------------------------------
# Organization links
# ---------------------------------------------------------------------------

async def get_link_by_token(db: AsyncSession, link_token: str) -> OrganizationLink | None:
    """Look up a submission link by its public token."""
    result = await db.execute(
        select(OrganizationLink).where(OrganizationLink.link_token == link_token)
    )
    return result.scalar_one_or_none()


async def increment_link_usage(db: AsyncSession, link_id: uuid.UUID) -> bool:
    """Atomically bump ``usage_count``; ``False`` if the link is exhausted.

    The limit is re-checked in the UPDATE itself so two concurrent
    submissions cannot both take the last slot.
    """
    result = await db.execute(
        update(OrganizationLink)
        .where(
            OrganizationLink.id == link_id,
            or_(
                OrganizationLink.usage_limit.is_(None),
                OrganizationLink.usage_count < OrganizationLink.usage_limit,
            ),
        )
        .values(usage_count=OrganizationLink.usage_count + 1)
    )
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

async def create_report(
    db: AsyncSession,
    organization_id: uuid.UUID,
    submitted_via_link_id: uuid.UUID | None,
    tracking_id: str,
    title: str,
    report_type: str,
    encrypted_content: str,
    encryption_key_hash: str,
    pii_scan_metadata: dict,
    priority: int = 3,
    tags: list | None = None,
) -> Report:
    """Insert a report row; the caller owns the transaction."""
    report = Report(
        id=uuid.uuid4(),
        organization_id=organization_id,
        submitted_via_link_id=submitted_via_link_id,
        tracking_id=tracking_id,
        title=title,
        report_type=report_type,
        priority=priority,
        tags=tags or [],
        status="new",
        encrypted_content=encrypted_content,
        encryption_key_hash=encryption_key_hash,
        pii_scan_metadata=pii_scan_metadata,
    )
    db.add(report)
    await db.flush()
    await db.refresh(report)
    return report


async def get_report_by_tracking_id(db: AsyncSession, tracking_id: str) -> Report | None:
    """Return a non-archived report by tracking id."""
    result = await db.execute(
        select(Report).where(
            Report.tracking_id == tracking_id,
            Report.status != ARCHIVED_STATUS,
        )
    )
    return result.scalar_one_or_none()


async def tracking_id_exists(db: AsyncSession, tracking_id: str) -> bool:
    result = await db.execute(
        select(Report.id).where(Report.tracking_id == tracking_id)
    )
    return result.first() is not None


# ---------------------------------------------------------------------------
# Report messages
# ---------------------------------------------------------------------------

async def create_message(
    db: AsyncSession,
    report_id: uuid.UUID,
    sender_type: str,
    encrypted_message: str,
) -> ReportMessage:
    """Create a new report message."""
    msg = ReportMessage(
        id=uuid.uuid4(),
        report_id=report_id,
        sender_type=sender_type,
        encrypted_message=encrypted_message,
        is_read=False,
    )
    db.add(msg)
    await db.flush()
    await db.refresh(msg)
    return msg


async def get_messages(
    db: AsyncSession, report_id: uuid.UUID, limit: int = 100
) -> list[ReportMessage]:
    """Return messages for a report ordered by creation time ascending."""
    result = await db.execute(
        select(ReportMessage)
        .where(ReportMessage.report_id == report_id)
        .order_by(ReportMessage.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Feature flags
# ---------------------------------------------------------------------------

async def is_feature_enabled(
    db: AsyncSession,
    feature_name: str,
    organization_id: uuid.UUID | str | None = None,
) -> bool:
    """Resolve a flag: the organization's own row wins over the global row.

    Missing flags are off.
    """
    conditions = [FeatureFlag.organization_id.is_(None)]
    if organization_id is not None:
        conditions.append(FeatureFlag.organization_id == uuid.UUID(str(organization_id)))

    result = await db.execute(
        select(FeatureFlag).where(
            FeatureFlag.feature_name == feature_name,
            or_(*conditions),
        )
    )
    flags = list(result.scalars().all())
    for flag in flags:
        if flag.organization_id is not None:
            return bool(flag.is_enabled)
    for flag in flags:
        return bool(flag.is_enabled)
    return False
