"""Initial schema: submission links, encrypted reports, messages, feature flags.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "organization_links",
        sa.Column(
            "id",
            sa.UUID(),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column("link_token", sa.String(128), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_links_organization", "organization_links", ["organization_id"])

    op.create_table(
        "reports",
        sa.Column(
            "id",
            sa.UUID(),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("organization_id", sa.UUID(), nullable=False),
        sa.Column(
            "submitted_via_link_id",
            sa.UUID(),
            sa.ForeignKey("organization_links.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("tracking_id", sa.String(12), nullable=False, unique=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("report_type", sa.String(50), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("tags", sa.JSON(), server_default=sa.text("'[]'::jsonb")),
        sa.Column("status", sa.String(30), nullable=False, server_default=sa.text("'new'")),
        sa.Column("encrypted_content", sa.Text(), nullable=False),
        sa.Column("encryption_key_hash", sa.String(64), nullable=False),
        sa.Column("pii_scan_metadata", sa.JSON(), server_default=sa.text("'{}'::jsonb")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_reports_organization_created",
        "reports",
        ["organization_id", "created_at"],
    )

    op.create_table(
        "report_messages",
        sa.Column(
            "id",
            sa.UUID(),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "report_id",
            sa.UUID(),
            sa.ForeignKey("reports.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("sender_type", sa.String(20), nullable=False),
        sa.Column("encrypted_message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_report_messages_report",
        "report_messages",
        ["report_id", "created_at"],
    )

    op.create_table(
        "feature_flags",
        sa.Column(
            "id",
            sa.UUID(),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("feature_name", sa.String(100), nullable=False),
        sa.Column("organization_id", sa.UUID(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.UniqueConstraint("feature_name", "organization_id", name="uq_feature_flag_org"),
    )


def downgrade() -> None:
    op.drop_table("feature_flags")
    op.drop_index("idx_report_messages_report", table_name="report_messages")
    op.drop_table("report_messages")
    op.drop_index("idx_reports_organization_created", table_name="reports")
    op.drop_table("reports")
    op.drop_index("idx_links_organization", table_name="organization_links")
    op.drop_table("organization_links")
