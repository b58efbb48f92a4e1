import uuid

from sqlalchemy import (
    Column,
    String,
    Text,
    Boolean,
    Integer,
    DateTime,
    ForeignKey,
    JSON,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from db.database import Base


class OrganizationLink(Base):
    __tablename__ = "organization_links"

    id = Column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    organization_id = Column(UUID(as_uuid=True), nullable=False)
    link_token = Column(String(128), nullable=False, unique=True)
    is_active = Column(Boolean, default=True, server_default=text("true"), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    usage_count = Column(Integer, default=0, server_default=text("0"), nullable=False)
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("idx_links_organization", "organization_id"),)


class Report(Base):
    __tablename__ = "reports"

    id = Column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    organization_id = Column(UUID(as_uuid=True), nullable=False)
    submitted_via_link_id = Column(
        UUID(as_uuid=True),
        ForeignKey("organization_links.id", ondelete="SET NULL"),
        nullable=True,
    )
    tracking_id = Column(String(12), nullable=False, unique=True)
    title = Column(String(255), nullable=False)
    report_type = Column(String(50), nullable=False)
    priority = Column(Integer, default=3, server_default=text("3"), nullable=False)
    tags = Column(JSON, default=list, server_default=text("'[]'::jsonb"))
    status = Column(String(30), default="new", server_default=text("'new'"), nullable=False)
    # base64(iv || ciphertext-with-tag); plaintext is never stored
    encrypted_content = Column(Text, nullable=False)
    encryption_key_hash = Column(String(64), nullable=False)
    pii_scan_metadata = Column(JSON, default=dict, server_default=text("'{}'::jsonb"))
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_reports_organization_created", "organization_id", "created_at"),
    )


class ReportMessage(Base):
    __tablename__ = "report_messages"

    id = Column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    report_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reports.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_type = Column(String(20), nullable=False)
    encrypted_message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, server_default=text("false"), nullable=False)
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("idx_report_messages_report", "report_id", "created_at"),)


class FeatureFlag(Base):
    __tablename__ = "feature_flags"

    id = Column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
        default=uuid.uuid4,
    )
    feature_name = Column(String(100), nullable=False)
    # NULL = global default; an organization row overrides it
    organization_id = Column(UUID(as_uuid=True), nullable=True)
    is_enabled = Column(Boolean, default=False, server_default=text("false"), nullable=False)

    __table_args__ = (
        UniqueConstraint("feature_name", "organization_id", name="uq_feature_flag_org"),
    )
