"""API request/response schemas for payment endpoints."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class PaymentCreateRequest(BaseModel):
    """Payment creation payload accepted from merchants."""

    amount: Decimal = Field(gt=0, max_digits=16, decimal_places=2)
    currency: str = Field(min_length=3, max_length=3)
    pay_currency: str = Field(min_length=2, max_length=16)
    description: str | None = Field(default=None, max_length=500)
    success_url: str | None = Field(default=None, max_length=2048)


class PaymentView(BaseModel):
    """Brand-only view of a payment; carries no processor identifiers."""

    payment_id: str
    status: str
    amount: Decimal
    currency: str
    pay_currency: str
    pay_address: str | None
    pay_amount: Decimal | None
    checkout_url: str
    expires_at: datetime | None
    created_at: datetime | None


class EstimateRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    currency_from: str = Field(min_length=3, max_length=3)
    currency_to: str = Field(min_length=2, max_length=16)


class EstimateResponse(BaseModel):
    amount: Decimal
    currency_from: str
    currency_to: str
    estimated_amount: Decimal
