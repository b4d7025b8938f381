"""Merchant callback notifications.

Rows are written to `notification_outbox` in the same transaction as the
status change they announce, then delivered by a background dispatcher.
Delivery is at-least-once: a failed POST is rescheduled with exponential
backoff until `max_attempts`, and never surfaces to the webhook caller.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
from sqlalchemy import select

from bgpay.common.logging import logger
from bgpay.common.metrics import notification_deliveries_total
from bgpay.common.outbox import (
    PENDING,
    claim_outbox_batch,
    mark_outbox_sent,
    reschedule_outbox_event,
)
from bgpay.common.signing import canonical_json, resolve_algorithm, sign
from bgpay.common.tracing import dependency_span
from bgpay.services.merchant_auth.models import MerchantWebhook
from bgpay.services.notifications.models import NotificationOutbox
from bgpay.services.payments.models import Payment

USER_AGENT = "BGP-Webhooks/1.0"
SIGNATURE_HEADER = "X-BGP-Signature"


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def build_payload(payment: Payment, event_type: str) -> dict:
    """Brand-only callback body; processor identifiers are never included."""

    return {
        "event": event_type,
        "payment": {
            "id": payment.payment_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "pay_currency": payment.pay_currency,
            "status": payment.status,
            "created_at": _iso(payment.created_at),
            "updated_at": _iso(payment.updated_at),
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class MerchantNotifier:
    """Queues and delivers signed `payment.<status>` callbacks."""

    def __init__(
        self,
        session_factory,
        *,
        algorithm: str = "sha512",
        timeout_seconds: float = 30.0,
        max_attempts: int = 5,
        backoff_base_seconds: float = 30.0,
        poll_interval_seconds: float = 1.0,
        service_name: str = "bgpay-gateway",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.algorithm = resolve_algorithm(algorithm)
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_seconds = backoff_base_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.service_name = service_name
        self.transport = transport

    def enqueue(self, db, payment: Payment) -> int:
        """Add one outbox row per active merchant webhook subscribed to this status."""

        event_type = f"payment.{payment.status}"
        hooks = (
            db.execute(
                select(MerchantWebhook).where(
                    MerchantWebhook.merchant_id == payment.merchant_id,
                    MerchantWebhook.status == "active",
                )
            )
            .scalars()
            .all()
        )
        now = datetime.now(timezone.utc)
        queued = 0
        for hook in hooks:
            if event_type not in (hook.events or []):
                continue
            db.add(
                NotificationOutbox(
                    webhook_id=hook.webhook_id,
                    payment_id=payment.payment_id,
                    event_type=event_type,
                    url=hook.url,
                    payload=build_payload(payment, event_type),
                    status=PENDING,
                    attempts=0,
                    next_attempt_at=now,
                    created_at=now,
                )
            )
            queued += 1
        if queued:
            logger.info("notification_enqueued payment_id=%s event=%s count=%s", payment.payment_id, event_type, queued)
        return queued

    def _next_attempt_at(self, attempts: int) -> datetime | None:
        if attempts >= self.max_attempts:
            return None
        return datetime.now(timezone.utc) + timedelta(seconds=self.backoff_base_seconds * 2 ** (attempts - 1))

    def _record_failure(self, row: NotificationOutbox, error: str, response_status: int | None) -> None:
        next_attempt_at = self._next_attempt_at(row.attempts)
        with self.session_factory() as db:
            reschedule_outbox_event(db, NotificationOutbox, row.id, error, next_attempt_at, response_status)
            db.commit()
        result = "gave_up" if next_attempt_at is None else "retry_scheduled"
        notification_deliveries_total.labels(service=self.service_name, result=result).inc()
        logger.warning(
            "notification_delivery_failed id=%s payment_id=%s attempt=%s status=%s result=%s error=%s",
            row.id,
            row.payment_id,
            row.attempts,
            response_status,
            result,
            error,
        )

    async def _deliver(self, row: NotificationOutbox, secret: str | None) -> bool:
        body = canonical_json(row.payload)
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if secret:
            headers[SIGNATURE_HEADER] = sign(body, secret, self.algorithm)
        try:
            with dependency_span("merchant_webhook", "deliver", event=row.event_type):
                async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                    resp = await client.post(row.url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            self._record_failure(row, f"{type(exc).__name__}: {exc}", None)
            return False
        if not 200 <= resp.status_code < 300:
            self._record_failure(row, resp.text[:1000], resp.status_code)
            return False
        with self.session_factory() as db:
            mark_outbox_sent(db, NotificationOutbox, row.id, resp.status_code)
            db.commit()
        notification_deliveries_total.labels(service=self.service_name, result="sent").inc()
        logger.info("notification_delivered id=%s payment_id=%s event=%s", row.id, row.payment_id, row.event_type)
        return True

    async def dispatch_pending(self, limit: int = 100) -> int:
        """Deliver one batch of due callbacks; returns the number delivered."""

        with self.session_factory() as db:
            rows = claim_outbox_batch(db, NotificationOutbox, limit=limit)
            webhook_ids = {row.webhook_id for row in rows}
            hook_secrets = {}
            if webhook_ids:
                hook_secrets = dict(
                    db.execute(
                        select(MerchantWebhook.webhook_id, MerchantWebhook.secret).where(
                            MerchantWebhook.webhook_id.in_(webhook_ids)
                        )
                    ).all()
                )
            db.commit()
        delivered = 0
        for row in rows:
            if await self._deliver(row, hook_secrets.get(row.webhook_id)):
                delivered += 1
        return delivered

    async def run_forever(self) -> None:
        """Poll the outbox for the lifetime of the app."""

        while True:
            try:
                await self.dispatch_pending()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("notification_dispatch_loop_error: %s", exc)
            await asyncio.sleep(self.poll_interval_seconds)
