"""Processor client tests against an in-process transport."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from bgpay.common.errors import ProcessorUnavailable
from bgpay.services.processor.client import ProcessorClient, ProcessorPayment


def _client(handler, **overrides) -> ProcessorClient:
    options = {
        "timeout_seconds": 1.0,
        "total_timeout_seconds": 2.0,
        "max_retries": 3,
        "backoff_base_seconds": 0.0,
        "transport": httpx.MockTransport(handler),
    }
    options.update(overrides)
    return ProcessorClient("https://processor.test/v1/", "secret-key", **options)


def _create(client: ProcessorClient):
    return asyncio.run(
        client.create_payment(
            price_amount=Decimal("100.00"),
            price_currency="USD",
            pay_currency="BTC",
            order_id="order-1",
            ipn_callback_url="https://pay.bgp.test/webhooks/processor",
        )
    )


def test_create_payment_parses_response(processor, processor_stub):
    payment = _create(processor)

    assert isinstance(payment, ProcessorPayment)
    assert payment.status == "waiting"
    assert payment.pay_currency == "BTC"
    assert payment.pay_amount == Decimal("0.00164")
    assert payment.expires_at is not None

    request = processor_stub.calls[0]
    assert request.headers["x-api-key"] == "test-processor-key"
    body = json.loads(request.content)
    assert body["price_currency"] == "usd"
    assert body["pay_currency"] == "btc"
    assert body["ipn_callback_url"].endswith("/webhooks/processor")


def test_retries_server_errors_then_succeeds():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(201, json={"payment_id": 42, "payment_status": "waiting", "pay_address": "addr"})

    payment = _create(_client(handler))

    assert len(attempts) == 3
    assert payment.external_id == "42"


def test_client_errors_are_not_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(400, json={"message": "bad currency"})

    with pytest.raises(ProcessorUnavailable):
        _create(_client(handler))
    assert len(attempts) == 1


def test_retries_are_bounded():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(ProcessorUnavailable):
        _create(_client(handler, max_retries=2))
    assert len(attempts) == 2


def test_transport_errors_become_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProcessorUnavailable):
        _create(_client(handler, max_retries=2))


def test_total_timeout_bounds_the_call():
    async def handler(request):
        await asyncio.sleep(1.0)
        return httpx.Response(201, json={})

    with pytest.raises(ProcessorUnavailable):
        _create(_client(handler, timeout_seconds=5.0, total_timeout_seconds=0.1))


def test_unusable_response_becomes_unavailable():
    def handler(request):
        return httpx.Response(201, json={"payment_status": "waiting"})

    with pytest.raises(ProcessorUnavailable):
        _create(_client(handler))


def test_non_object_json_is_unavailable_without_retry():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(200, json=[])

    with pytest.raises(ProcessorUnavailable):
        _create(_client(handler))
    assert len(attempts) == 1


def test_get_currencies_upper_cases(processor):
    assert asyncio.run(processor.get_currencies()) == ["BTC", "ETH", "DOGE"]


def test_get_estimate_sends_lower_case_codes(processor, processor_stub):
    result = asyncio.run(processor.get_estimate(Decimal("10"), "USD", "BTC"))

    assert result["estimated_amount"] == "0.00164"
    params = processor_stub.calls[0].url.params
    assert params["currency_from"] == "usd"
    assert params["currency_to"] == "btc"


def test_get_payment_status(processor, processor_stub):
    result = asyncio.run(processor.get_payment_status("5077125051"))

    assert result["payment_status"] == "confirming"
    assert processor_stub.calls[0].url.path == "/v1/payment/5077125051"
