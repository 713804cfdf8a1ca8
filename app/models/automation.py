from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class AutomationRule(Base):
    __tablename__ = "automation_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    scope_spreadsheet_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    scope_spreadsheet_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    scope_date: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    watched_column: Mapped[str] = mapped_column(String(120), nullable=False)
    operator: Mapped[str] = mapped_column(String(20), nullable=False, default="equals", server_default="equals")
    trigger_value: Mapped[str] = mapped_column(String(255), nullable=False, default="", server_default="")
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="sms", server_default="sms")
    sender_number: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_column: Mapped[str] = mapped_column(String(120), nullable=False)
    message_template: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("ix_automation_rules_tenant_enabled", "tenant_id", "enabled"),
        Index("ix_automation_rules_tenant_updated_at", "tenant_id", "updated_at"),
    )


class AutomationTenantIndex(Base):
    """Tenants holding at least one rule; the webhook fan-out only visits these."""

    __tablename__ = "automation_tenant_index"

    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
