"""HTTP surface tests through FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient

from bgpay.services.api_gateway.main import app
from bgpay.services.payments.models import Payment
from bgpay.services.rate_limit.service import InMemoryRateLimiter
from tests.fakes import ipn_body, make_merchant, signed_headers

PAYMENT = {"amount": "100.00", "currency": "USD", "pay_currency": "BTC"}

STATE_KEYS = ("rate_limiter", "authenticator", "facade", "webhooks", "notifier", "processor")


def _external_id(session_factory, payment_id):
    with session_factory() as db:
        return db.get(Payment, payment_id).external_id


@pytest.fixture
def client(authenticator, facade, webhook_service, notifier, processor):
    saved = {key: getattr(app.state, key) for key in STATE_KEYS}
    app.state.rate_limiter = InMemoryRateLimiter(window_seconds=60, max_requests=100)
    app.state.authenticator = authenticator
    app.state.facade = facade
    app.state.webhooks = webhook_service
    app.state.notifier = notifier
    app.state.processor = processor
    yield TestClient(app)
    for key, value in saved.items():
        setattr(app.state, key, value)


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


@pytest.mark.parametrize("header", [None, "garbage", "bgp_live_unknown:SECRET"])
def test_authentication_failures_are_uniform(client, header):
    headers = {"x-merchant-key": header} if header is not None else {}

    resp = client.post("/payments", json=PAYMENT, headers=headers)

    assert resp.status_code == 401
    assert resp.json() == {"detail": "invalid credentials"}


def test_wrong_secret_looks_like_unknown_key(client, session_factory):
    _, header = make_merchant(session_factory)
    public_id = header.split(":", 1)[0]

    resp = client.get("/payments/anything", headers={"x-merchant-key": f"{public_id}:nope"})

    assert resp.status_code == 401
    assert resp.json() == {"detail": "invalid credentials"}


def test_create_and_fetch_payment(client, merchant, session_factory):
    _, header = merchant

    created = client.post("/payments", json=PAYMENT, headers={"x-merchant-key": header})

    assert created.status_code == 200
    body = created.json()
    assert body["status"] == "pending"
    assert body["pay_address"]
    assert body["checkout_url"].endswith(f"/checkout/{body['payment_id']}")
    assert "external_id" not in body
    assert _external_id(session_factory, body["payment_id"]) not in created.text

    fetched = client.get(f"/payments/{body['payment_id']}", headers={"x-merchant-key": header})
    assert fetched.status_code == 200
    assert fetched.json()["payment_id"] == body["payment_id"]


def test_invalid_payment_request(client, merchant):
    _, header = merchant

    resp = client.post(
        "/payments",
        json={"amount": "-1", "currency": "XXX", "pay_currency": "BTC"},
        headers={"x-merchant-key": header},
    )

    assert resp.status_code == 400
    fields = {error["field"] for error in resp.json()["errors"]}
    assert "amount" in fields


def test_unknown_payment_is_404(client, merchant):
    _, header = merchant

    resp = client.get("/payments/missing", headers={"x-merchant-key": header})

    assert resp.status_code == 404


def test_processor_outage_is_502(client, merchant, processor_stub):
    _, header = merchant
    processor_stub.fail_with = 503

    resp = client.post("/payments", json=PAYMENT, headers={"x-merchant-key": header})

    assert resp.status_code == 502
    assert "processor" not in resp.json()["detail"]


def test_rate_limit_rejects_after_maximum(client, merchant):
    _, header = merchant
    app.state.rate_limiter = InMemoryRateLimiter(window_seconds=60, max_requests=2)

    statuses = [client.get("/payments/missing", headers={"x-merchant-key": header}).status_code for _ in range(3)]

    assert statuses == [404, 404, 429]
    resp = client.get("/payments/missing", headers={"x-merchant-key": header})
    assert int(resp.headers["Retry-After"]) >= 1


def test_unauthenticated_requests_do_not_consume_rate_limit(client, merchant):
    _, header = merchant
    app.state.rate_limiter = InMemoryRateLimiter(window_seconds=60, max_requests=1)

    for _ in range(3):
        client.get("/payments/missing", headers={"x-merchant-key": "bgp_live_x:bad"})

    assert client.get("/payments/missing", headers={"x-merchant-key": header}).status_code == 404


def test_currencies_intersects_processor_offer(client, merchant):
    _, header = merchant

    resp = client.get("/currencies", headers={"x-merchant-key": header})

    assert resp.status_code == 200
    assert "DOGE" not in resp.json()["currencies"]
    assert "BTC" in resp.json()["currencies"]


def test_estimate(client, merchant):
    _, header = merchant

    resp = client.post(
        "/estimate",
        json={"amount": "10", "currency_from": "usd", "currency_to": "btc"},
        headers={"x-merchant-key": header},
    )

    assert resp.status_code == 200
    assert resp.json()["currency_to"] == "BTC"


def test_webhook_without_valid_signature_is_401(client):
    resp = client.post("/webhooks/processor", content=b'{"payment_id":1}', headers={"x-bgp-signature": "bad"})

    assert resp.status_code == 401
    assert resp.json() == {"ok": False}


def test_webhook_applies_status(client, merchant, session_factory):
    _, header = merchant
    payment = client.post("/payments", json=PAYMENT, headers={"x-merchant-key": header}).json()
    body = ipn_body(_external_id(session_factory, payment["payment_id"]), "finished")

    resp = client.post("/webhooks/processor", content=body, headers=signed_headers(body))

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "outcome": "applied"}
    fetched = client.get(f"/payments/{payment['payment_id']}", headers={"x-merchant-key": header})
    assert fetched.json()["status"] == "confirmed"


def test_webhook_unknown_status_is_409(client):
    body = ipn_body("1", "chargeback")

    resp = client.post("/webhooks/processor", content=body, headers=signed_headers(body))

    assert resp.status_code == 409


def test_metrics_endpoint(client):
    client.get("/health")

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert "http_requests_total" in resp.text
