"""Merchant identity and credential models.

Merchants are created at onboarding and are read-only to the gateway; only a
credential's `last_used_at` and `status` are ever written here.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from bgpay.common.db import Base, JSONType


class Merchant(Base):
    """Business entity that owns credentials and payments."""

    __tablename__ = "merchants"

    merchant_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    # CIDR strings; empty list means no allowlist.
    ip_allowlist: Mapped[list] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ApiCredential(Base):
    """One `publicId:secret` API key; only the secret's keyed hash is stored."""

    __tablename__ = "api_credentials"

    credential_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    merchant_id: Mapped[str] = mapped_column(ForeignKey("merchants.merchant_id"), index=True)
    public_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    secret_hash: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="active")
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class MerchantWebhook(Base):
    """Merchant callback endpoint subscribed to payment status events."""

    __tablename__ = "merchant_webhooks"

    webhook_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    merchant_id: Mapped[str] = mapped_column(ForeignKey("merchants.merchant_id"), index=True)
    url: Mapped[str] = mapped_column(String)
    secret: Mapped[str | None] = mapped_column(String, nullable=True)
    events: Mapped[list] = mapped_column(JSONType, default=list)
    status: Mapped[str] = mapped_column(String, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
