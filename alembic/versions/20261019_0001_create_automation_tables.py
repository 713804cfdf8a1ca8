"""create automation rule, tenant index, session and credential tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "automation_rules",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("scope_spreadsheet_id", sa.String(length=128), nullable=True),
        sa.Column("scope_spreadsheet_name", sa.String(length=255), nullable=True),
        sa.Column("scope_date", sa.String(length=40), nullable=True),
        sa.Column("watched_column", sa.String(length=120), nullable=False),
        sa.Column("operator", sa.String(length=20), nullable=False, server_default="equals"),
        sa.Column("trigger_value", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("channel", sa.String(length=20), nullable=False, server_default="sms"),
        sa.Column("sender_number", sa.String(length=32), nullable=False),
        sa.Column("recipient_column", sa.String(length=120), nullable=False),
        sa.Column("message_template", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_rules_tenant_id", "automation_rules", ["tenant_id"], unique=False)
    op.create_index(
        "ix_automation_rules_tenant_enabled",
        "automation_rules",
        ["tenant_id", "enabled"],
        unique=False,
    )
    op.create_index(
        "ix_automation_rules_tenant_updated_at",
        "automation_rules",
        ["tenant_id", "updated_at"],
        unique=False,
    )

    op.create_table(
        "automation_tenant_index",
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("tenant_id"),
    )

    op.create_table(
        "tenant_sessions",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tenant_sessions_tenant_id", "tenant_sessions", ["tenant_id"], unique=False)
    op.create_index("ix_tenant_sessions_expires_at", "tenant_sessions", ["expires_at"], unique=False)

    op.create_table(
        "messaging_credentials",
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False, server_default="solapi"),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("tenant_id"),
    )


def downgrade() -> None:
    op.drop_table("messaging_credentials")

    op.drop_index("ix_tenant_sessions_expires_at", table_name="tenant_sessions")
    op.drop_index("ix_tenant_sessions_tenant_id", table_name="tenant_sessions")
    op.drop_table("tenant_sessions")

    op.drop_table("automation_tenant_index")

    op.drop_index("ix_automation_rules_tenant_updated_at", table_name="automation_rules")
    op.drop_index("ix_automation_rules_tenant_enabled", table_name="automation_rules")
    op.drop_index("ix_automation_rules_tenant_id", table_name="automation_rules")
    op.drop_table("automation_rules")
