"""HTTP client for the external crypto payment processor.

Server-side only. Every call carries the processor API key, retries 429/5xx
and transport errors with exponential backoff, and is bounded overall by a
hard timeout. All failures surface as `ProcessorUnavailable`.
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from time import perf_counter
from typing import Any

import httpx

from bgpay.common.errors import ProcessorUnavailable
from bgpay.common.logging import logger
from bgpay.common.metrics import processor_latency_seconds, retries_total
from bgpay.common.tracing import dependency_span


class ProcessorHTTPError(Exception):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"processor responded with {status_code}: {body[:200]}")
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


@dataclass(frozen=True)
class ProcessorPayment:
    """Processor-side view of a created payment; never leaves the service."""

    external_id: str
    status: str
    pay_address: str
    pay_amount: Decimal | None
    pay_currency: str
    expires_at: datetime | None
    raw: dict[str, Any]

    @classmethod
    def from_response(cls, payload: dict[str, Any]) -> "ProcessorPayment":
        external_id = payload.get("payment_id")
        pay_address = payload.get("pay_address")
        if external_id is None or not pay_address:
            raise ValueError("processor response missing payment_id/pay_address")
        pay_amount = payload.get("pay_amount")
        return cls(
            external_id=str(external_id),
            status=str(payload.get("payment_status", "waiting")),
            pay_address=str(pay_address),
            pay_amount=Decimal(str(pay_amount)) if pay_amount is not None else None,
            pay_currency=str(payload.get("pay_currency", "")).upper(),
            expires_at=_parse_timestamp(payload.get("expiration_estimate_date") or payload.get("valid_until")),
            raw=payload,
        )


def _parse_timestamp(value) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class ProcessorClient:
    """Thin async wrapper around the processor REST endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        total_timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        service_name: str = "bgpay-gateway",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.total_timeout_seconds = total_timeout_seconds
        self.max_retries = max(1, max_retries)
        self.backoff_base_seconds = backoff_base_seconds
        self.service_name = service_name
        self.transport = transport

    async def _request_once(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self.transport,
            headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
        ) as client:
            resp = await client.request(method, path, **kwargs)
        if resp.status_code >= 400:
            raise ProcessorHTTPError(resp.status_code, resp.text)
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ProcessorHTTPError(resp.status_code, f"invalid JSON body: {resp.text}") from exc
        if not isinstance(payload, dict):
            raise ProcessorHTTPError(resp.status_code, f"expected a JSON object: {resp.text}")
        return payload

    async def _request_with_retries(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._request_once(method, path, **kwargs)
            except ProcessorHTTPError as exc:
                if not exc.retryable or attempt == self.max_retries:
                    raise
                error = exc
            except httpx.TransportError as exc:
                if attempt == self.max_retries:
                    raise
                error = exc
            retries_total.labels(service=self.service_name, dependency="processor").inc()
            # Exponential backoff with jitter: 1s, 2s, 4s (+ up to one base unit).
            backoff_seconds = self.backoff_base_seconds * (2 ** (attempt - 1) + random.random())
            logger.warning(
                "processor_retry path=%s attempt=%s backoff_s=%.2f error=%s",
                path,
                attempt,
                backoff_seconds,
                error,
            )
            await asyncio.sleep(backoff_seconds)
        raise ProcessorHTTPError(0, "retries exhausted")

    async def request(self, operation: str, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Run one bounded processor call, translating every failure to `ProcessorUnavailable`."""

        start = perf_counter()
        with dependency_span("processor", operation, http_method=method, http_path=path):
            try:
                return await asyncio.wait_for(
                    self._request_with_retries(method, path, **kwargs),
                    timeout=self.total_timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                logger.error("processor_timeout operation=%s timeout_s=%s", operation, self.total_timeout_seconds)
                raise ProcessorUnavailable(f"{operation} timed out") from exc
            except (ProcessorHTTPError, httpx.HTTPError) as exc:
                logger.error("processor_error operation=%s error=%s", operation, exc)
                raise ProcessorUnavailable(f"{operation} failed") from exc
            finally:
                processor_latency_seconds.labels(service=self.service_name, operation=operation).observe(
                    max(0.0, perf_counter() - start)
                )

    async def create_payment(
        self,
        *,
        price_amount: Decimal,
        price_currency: str,
        pay_currency: str,
        order_id: str,
        ipn_callback_url: str,
        order_description: str | None = None,
        success_url: str | None = None,
    ) -> ProcessorPayment:
        body = {
            "price_amount": float(price_amount),
            "price_currency": price_currency.lower(),
            "pay_currency": pay_currency.lower(),
            "order_id": order_id,
            "ipn_callback_url": ipn_callback_url,
        }
        if order_description:
            body["order_description"] = order_description
        if success_url:
            body["success_url"] = success_url
        payload = await self.request("create_payment", "POST", "/payment", json=body)
        try:
            return ProcessorPayment.from_response(payload)
        except (ValueError, ArithmeticError) as exc:
            logger.error("processor_response_invalid operation=create_payment error=%s", exc)
            raise ProcessorUnavailable("create_payment returned an unusable response") from exc

    async def get_payment_status(self, external_id: str) -> dict[str, Any]:
        return await self.request("get_payment_status", "GET", f"/payment/{external_id}")

    async def get_estimate(self, amount: Decimal, currency_from: str, currency_to: str) -> dict[str, Any]:
        return await self.request(
            "get_estimate",
            "GET",
            "/estimate",
            params={
                "amount": str(amount),
                "currency_from": currency_from.lower(),
                "currency_to": currency_to.lower(),
            },
        )

    async def get_currencies(self) -> list[str]:
        payload = await self.request("get_currencies", "GET", "/currencies")
        return [str(code).upper() for code in payload.get("currencies", [])]
