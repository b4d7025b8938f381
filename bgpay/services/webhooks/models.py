"""Audit log of inbound processor callbacks."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from bgpay.common.db import Base


class WebhookEvent(Base):
    """One received processor webhook, verified or not."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    header_used: Mapped[str | None] = mapped_column(String, nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    external_status: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String, index=True)
    detail: Mapped[str | None] = mapped_column(String, nullable=True)
    raw_body: Mapped[str] = mapped_column(Text)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
