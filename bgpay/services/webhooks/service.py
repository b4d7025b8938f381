"""Inbound processor webhook (IPN) handling.

Trust is established only by an HMAC over the exact raw request body. The
verifier returns `Verified` or `Invalid`; the payload is reachable only
through `Verified`, so an unauthenticated body can never reach the façade.
"""

import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping
from uuid import uuid4

from bgpay.common.errors import InvalidTransition, SignatureInvalid, UnknownExternalStatus
from bgpay.common.logging import logger, payment_id_ctx
from bgpay.common.metrics import webhook_events_total
from bgpay.common.signing import resolve_algorithm, sign, signatures_match
from bgpay.services.notifications.service import MerchantNotifier
from bgpay.services.payments.service import PaymentFacade
from bgpay.services.processor.status import map_external_status
from bgpay.services.webhooks.models import WebhookEvent

# Branded header first, processor-native header for compatibility.
SIGNATURE_HEADERS = ("x-bgp-signature", "x-nowpayments-sig")


@dataclass(frozen=True)
class Verified:
    payload: dict[str, Any]


@dataclass(frozen=True)
class Invalid:
    reason: str


@dataclass(frozen=True)
class WebhookResult:
    outcome: str
    payment_id: str | None = None
    status: str | None = None


def select_signature(headers: Mapping[str, str]) -> tuple[str | None, str | None]:
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value, name
    return None, None


class WebhookVerifier:
    """Keyed-hash check of raw webhook bodies."""

    def __init__(self, secret: str, algorithm: str = "sha512") -> None:
        if not secret:
            raise ValueError("webhook secret is required")
        self.secret = secret
        self.algorithm = resolve_algorithm(algorithm)

    def expected_signature(self, raw_body: bytes) -> str:
        return sign(raw_body, self.secret, self.algorithm)

    def verify(self, raw_body: bytes, signature: str | None) -> Verified | Invalid:
        if not signature:
            return Invalid("signature header missing")
        if not signatures_match(self.expected_signature(raw_body), signature):
            return Invalid("signature mismatch")
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            return Invalid("signed body is not JSON")
        if not isinstance(payload, dict):
            return Invalid("signed body is not a JSON object")
        return Verified(payload)


def _decimal_or_none(value) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class WebhookService:
    """Verifies, audits and applies processor status callbacks."""

    def __init__(
        self,
        session_factory,
        verifier: WebhookVerifier,
        facade: PaymentFacade,
        notifier: MerchantNotifier,
        service_name: str = "bgpay-gateway",
    ) -> None:
        self.session_factory = session_factory
        self.verifier = verifier
        self.facade = facade
        self.notifier = notifier
        self.service_name = service_name

    def _record(
        self,
        event_id: str,
        raw_body: bytes,
        *,
        outcome: str,
        header_used: str | None,
        verified: bool,
        external_id: str | None = None,
        external_status: str | None = None,
        payment_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        with self.session_factory() as db:
            db.add(
                WebhookEvent(
                    event_id=event_id,
                    header_used=header_used,
                    verified=verified,
                    external_id=external_id,
                    external_status=external_status,
                    payment_id=payment_id,
                    outcome=outcome,
                    detail=detail,
                    raw_body=raw_body.decode("utf-8", errors="replace"),
                )
            )
            db.commit()
        webhook_events_total.labels(service=self.service_name, outcome=outcome).inc()

    def process(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """Handle one delivery. Raises `SignatureInvalid` or a `StateError` on rejection."""

        event_id = str(uuid4())
        signature, header_used = select_signature(headers)
        result = self.verifier.verify(raw_body, signature)
        if isinstance(result, Invalid):
            self._record(
                event_id,
                raw_body,
                outcome="unverified",
                header_used=header_used,
                verified=False,
                detail=result.reason,
            )
            logger.warning("webhook_unverified event_id=%s header=%s reason=%s", event_id, header_used, result.reason)
            raise SignatureInvalid(result.reason)

        payload = result.payload
        raw_external_id = payload.get("payment_id")
        external_id = str(raw_external_id) if raw_external_id is not None else None
        raw_status = payload.get("payment_status")
        external_status = str(raw_status) if raw_status is not None else None
        common = {
            "header_used": header_used,
            "verified": True,
            "external_id": external_id,
            "external_status": external_status,
        }

        try:
            target = map_external_status(raw_status)
        except UnknownExternalStatus as exc:
            self._record(event_id, raw_body, outcome="unknown_status", detail=str(exc), **common)
            logger.error(
                "webhook_unknown_status event_id=%s external_id=%s status=%r",
                event_id,
                external_id,
                raw_status,
            )
            raise

        payment = self.facade.find_by_external_id(external_id) if external_id else None
        order_id = payload.get("order_id")
        if payment is None and external_id and order_id:
            # The quote may not be committed yet; our payment id rides along as order_id.
            candidate = self.facade.find_by_id(str(order_id))
            if candidate is not None and candidate.external_id in (None, external_id):
                payment = candidate
        if payment is None:
            self._record(event_id, raw_body, outcome="unknown_payment", **common)
            logger.warning("webhook_unknown_payment event_id=%s external_id=%s", event_id, external_id)
            return WebhookResult(outcome="unknown_payment")

        payment_id_ctx.set(payment.payment_id)
        values = {
            "pay_address": payload.get("pay_address") or None,
            "amount_received": _decimal_or_none(payload.get("actually_paid")),
        }
        if payment.external_id is None:
            values["external_id"] = external_id
        try:
            outcome = self.facade.apply_status(
                payment.payment_id,
                target,
                reason=f"processor_{external_status}",
                event_id=event_id,
                values=values,
                after_apply=self.notifier.enqueue,
            )
        except InvalidTransition as exc:
            self._record(
                event_id,
                raw_body,
                outcome="invalid_transition",
                payment_id=payment.payment_id,
                detail=str(exc),
                **common,
            )
            logger.error(
                "webhook_invalid_transition event_id=%s payment_id=%s current=%s wanted=%s",
                event_id,
                payment.payment_id,
                exc.current,
                exc.new,
            )
            raise

        label = "applied" if outcome.applied else "ignored"
        self._record(
            event_id,
            raw_body,
            outcome=label,
            payment_id=payment.payment_id,
            detail=f"{outcome.from_state}->{outcome.status}",
            **common,
        )
        logger.info(
            "webhook_%s event_id=%s payment_id=%s from=%s to=%s",
            label,
            event_id,
            payment.payment_id,
            outcome.from_state,
            outcome.status,
        )
        return WebhookResult(outcome=label, payment_id=payment.payment_id, status=outcome.status)
