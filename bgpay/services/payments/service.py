"""Payment façade.

Owns every write to the `payments` table: creation, the processor hand-off,
and webhook-driven status changes. Merchants only ever see `PaymentView`.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select, update
from sqlalchemy.orm.attributes import set_committed_value

from bgpay.common.errors import InvalidPaymentRequest, PaymentNotFound, ProcessorUnavailable
from bgpay.common.logging import logger, payment_id_ctx
from bgpay.common.metrics import (
    payment_created_total,
    payment_failure_total,
    payment_requests_total,
    payment_transitions_total,
)
from bgpay.common.state_machine import CREATED, FAILED, PENDING, is_terminal, validate_transition
from bgpay.services.merchant_auth.service import AuthenticatedMerchant
from bgpay.services.payments.models import Payment, PaymentTimeline
from bgpay.services.payments.schemas import PaymentCreateRequest, PaymentView
from bgpay.services.processor.client import ProcessorClient


@dataclass(frozen=True)
class TransitionOutcome:
    applied: bool
    from_state: str
    status: str


class PaymentFacade:
    """Creates payments through the processor and guards their status machine."""

    def __init__(
        self,
        session_factory,
        processor: ProcessorClient,
        *,
        platform_url: str,
        fiat_currencies: frozenset[str],
        pay_currencies: frozenset[str],
        payment_ttl_minutes: int = 60,
        service_name: str = "bgpay-gateway",
    ) -> None:
        self.session_factory = session_factory
        self.processor = processor
        self.platform_url = platform_url.rstrip("/")
        self.fiat_currencies = fiat_currencies
        self.pay_currencies = pay_currencies
        self.payment_ttl_minutes = payment_ttl_minutes
        self.service_name = service_name

    @property
    def ipn_callback_url(self) -> str:
        return f"{self.platform_url}/webhooks/processor"

    def checkout_url(self, payment_id: str) -> str:
        return f"{self.platform_url}/checkout/{payment_id}"

    def to_view(self, payment: Payment) -> PaymentView:
        return PaymentView(
            payment_id=payment.payment_id,
            status=payment.status,
            amount=payment.amount,
            currency=payment.currency,
            pay_currency=payment.pay_currency,
            pay_address=payment.pay_address,
            pay_amount=payment.pay_amount,
            checkout_url=self.checkout_url(payment.payment_id),
            expires_at=payment.expires_at,
            created_at=payment.created_at,
        )

    def validate_request(self, data: Any) -> PaymentCreateRequest:
        """Parse and check a creation request, collecting every field error."""

        if isinstance(data, PaymentCreateRequest):
            req = data
        else:
            try:
                req = PaymentCreateRequest.model_validate(data)
            except PydanticValidationError as exc:
                errors = [
                    {
                        "field": ".".join(str(part) for part in err["loc"]) or "body",
                        "message": err["msg"],
                    }
                    for err in exc.errors()
                ]
                raise InvalidPaymentRequest(errors) from exc

        currency = req.currency.upper()
        pay_currency = req.pay_currency.upper()
        errors = []
        if currency not in self.fiat_currencies:
            errors.append({"field": "currency", "message": f"unsupported fiat currency {currency}"})
        if pay_currency not in self.pay_currencies:
            errors.append({"field": "pay_currency", "message": f"unsupported pay currency {pay_currency}"})
        if errors:
            raise InvalidPaymentRequest(errors)
        return req.model_copy(update={"currency": currency, "pay_currency": pay_currency})

    async def create(self, merchant: AuthenticatedMerchant, request: Any) -> PaymentView:
        """Create a payment in `created`, hand it to the processor, and move it to `pending`.

        A processor failure leaves the row in `failed` for audit and raises
        `ProcessorUnavailable`.
        """

        req = self.validate_request(request)
        payment_requests_total.labels(service=self.service_name).inc()

        now = datetime.now(timezone.utc)
        with self.session_factory() as db:
            payment = Payment(
                created_at=now,
                updated_at=now,
                merchant_id=merchant.merchant_id,
                amount=req.amount,
                currency=req.currency,
                pay_currency=req.pay_currency,
                description=req.description,
                success_url=req.success_url,
                status=CREATED,
                state_version=0,
            )
            db.add(payment)
            db.flush()
            db.add(
                PaymentTimeline(
                    payment_id=payment.payment_id,
                    from_state=None,
                    to_state=CREATED,
                    reason="payment_created",
                    event_id=None,
                )
            )
            db.commit()
        payment_id_ctx.set(payment.payment_id)

        try:
            quote = await self.processor.create_payment(
                price_amount=req.amount,
                price_currency=req.currency,
                pay_currency=req.pay_currency,
                order_id=payment.payment_id,
                ipn_callback_url=self.ipn_callback_url,
                order_description=req.description,
                success_url=req.success_url,
            )
        except ProcessorUnavailable:
            self._fail_creation(payment, "processor_unavailable")
            raise
        except (Exception, asyncio.CancelledError) as exc:
            # Unexpected failures also end in `failed`.
            self._fail_creation(payment, f"processor_error:{type(exc).__name__}")
            raise

        expires_at = quote.expires_at or datetime.now(timezone.utc) + timedelta(minutes=self.payment_ttl_minutes)
        with self.session_factory() as db:
            applied = self._transition(
                db,
                payment,
                PENDING,
                reason="processor_accepted",
                event_id=None,
                values={
                    "external_id": quote.external_id,
                    "pay_address": quote.pay_address,
                    "pay_amount": quote.pay_amount,
                    "expires_at": expires_at,
                },
            )
            if not applied:
                # An IPN matched by order id won the race; keep the quote details it did not carry.
                db.execute(
                    update(Payment)
                    .where(Payment.payment_id == payment.payment_id)
                    .values(
                        external_id=func.coalesce(Payment.external_id, quote.external_id),
                        pay_address=func.coalesce(Payment.pay_address, quote.pay_address),
                        pay_amount=func.coalesce(Payment.pay_amount, quote.pay_amount),
                        expires_at=func.coalesce(Payment.expires_at, expires_at),
                    )
                    .execution_options(synchronize_session=False)
                )
            db.commit()
            if not applied:
                payment = db.get(Payment, payment.payment_id)
                logger.warning(
                    "payment_pending_not_applied payment_id=%s status=%s",
                    payment.payment_id,
                    payment.status,
                )
        payment_created_total.labels(service=self.service_name).inc()
        logger.info("payment_created payment_id=%s pay_currency=%s", payment.payment_id, payment.pay_currency)
        return self.to_view(payment)

    def _fail_creation(self, payment: Payment, reason: str) -> None:
        with self.session_factory() as db:
            self._transition(db, payment, FAILED, reason=reason, event_id=None)
            db.commit()
        payment_failure_total.labels(service=self.service_name).inc()
        logger.error(
            "payment_processor_failed payment_id=%s merchant_id=%s reason=%s",
            payment.payment_id,
            payment.merchant_id,
            reason,
        )

    def get(self, merchant: AuthenticatedMerchant, payment_id: str) -> PaymentView:
        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
        if payment is None or payment.merchant_id != merchant.merchant_id:
            raise PaymentNotFound(f"payment {payment_id} not found")
        return self.to_view(payment)

    def find_by_id(self, payment_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.get(Payment, payment_id)

    def find_by_external_id(self, external_id: str) -> Payment | None:
        with self.session_factory() as db:
            return db.execute(select(Payment).where(Payment.external_id == external_id)).scalar_one_or_none()

    def apply_status(
        self,
        payment_id: str,
        target: str,
        *,
        reason: str,
        event_id: str | None = None,
        values: dict[str, Any] | None = None,
        after_apply: Callable[[Any, Payment], None] | None = None,
    ) -> TransitionOutcome:
        """Move a payment forward to `target` if the status machine allows it.

        Re-delivered or stale events (same status, terminal status, or a lost
        compare-and-swap) are ignored rather than raised. A backwards or
        skipping move raises `InvalidTransition`. `after_apply` runs inside the
        same transaction as the status write.
        """

        with self.session_factory() as db:
            payment = db.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFound(f"payment {payment_id} not found")
            from_state = payment.status
            if payment.status == target or is_terminal(payment.status):
                return TransitionOutcome(applied=False, from_state=from_state, status=payment.status)
            validate_transition(payment.status, target)
            if not self._transition(db, payment, target, reason=reason, event_id=event_id, values=values):
                db.rollback()
                db.refresh(payment)
                logger.info(
                    "payment_transition_lost payment_id=%s wanted=%s current=%s",
                    payment_id,
                    target,
                    payment.status,
                )
                return TransitionOutcome(applied=False, from_state=from_state, status=payment.status)
            if after_apply is not None:
                after_apply(db, payment)
            db.commit()
            return TransitionOutcome(applied=True, from_state=from_state, status=payment.status)

    def _transition(
        self,
        db,
        payment: Payment,
        new_status: str,
        reason: str,
        event_id: str | None,
        values: dict[str, Any] | None = None,
    ) -> bool:
        """Apply one validated transition with optimistic concurrency.

        The write is guarded by `(payment_id, status, state_version)`; returns
        False when another writer got there first.
        """

        validate_transition(payment.status, new_status)
        from_status = payment.status
        current_version = payment.state_version
        extra = {key: value for key, value in (values or {}).items() if value is not None}

        result = db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment.payment_id,
                Payment.status == from_status,
                Payment.state_version == current_version,
            )
            .values(
                status=new_status,
                state_version=current_version + 1,
                updated_at=datetime.now(timezone.utc),
                **extra,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        set_committed_value(payment, "status", new_status)
        set_committed_value(payment, "state_version", current_version + 1)
        for key, value in extra.items():
            set_committed_value(payment, key, value)
        db.add(
            PaymentTimeline(
                payment_id=payment.payment_id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
                event_id=event_id,
            )
        )
        payment_transitions_total.labels(
            service=self.service_name,
            from_state=from_status,
            to_state=new_status,
        ).inc()
        return True
