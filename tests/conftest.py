"""Shared fixtures: environment, in-memory database, and stubbed HTTP peers."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("PROCESSOR_API_KEY", "test-processor-key")
os.environ.setdefault("PROCESSOR_URL", "https://processor.test/v1")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("BRAND_SIGNING_SECRET", "test-brand-secret")
os.environ.setdefault("PLATFORM_URL", "https://pay.bgp.test")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("OTEL_ENABLED", "false")

import httpx
import pytest

from bgpay.common.db import Base, build_engine, make_session_factory
from bgpay.services.merchant_auth.models import MerchantWebhook
from bgpay.services.merchant_auth.service import ApiKeyAuthenticator, AuthenticatedMerchant
from bgpay.services.notifications.models import NotificationOutbox  # noqa: F401
from bgpay.services.notifications.service import MerchantNotifier
from bgpay.services.payments.models import Payment, PaymentTimeline  # noqa: F401
from bgpay.services.payments.service import PaymentFacade
from bgpay.services.processor.client import ProcessorClient
from bgpay.services.webhooks.models import WebhookEvent  # noqa: F401
from bgpay.services.webhooks.service import WebhookService, WebhookVerifier
from tests.fakes import (
    CRYPTO,
    FIAT,
    PLATFORM_URL,
    SIGNING_SECRET,
    WEBHOOK_SECRET,
    MerchantEndpoint,
    ProcessorStub,
    make_merchant,
)


@pytest.fixture
def engine():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def merchant(session_factory):
    """(identity, credential header) for one active merchant."""

    merchant_id, header = make_merchant(session_factory)
    public_id = header.split(":", 1)[0]
    return AuthenticatedMerchant(merchant_id=merchant_id, credential_id="", public_id=public_id), header


@pytest.fixture
def merchant_webhook(session_factory, merchant):
    identity, _ = merchant
    with session_factory() as db:
        hook = MerchantWebhook(
            merchant_id=identity.merchant_id,
            url="https://merchant.test/hooks/bgp",
            secret="merchant-hook-secret",
            events=["payment.confirmed", "payment.failed", "payment.expired"],
            status="active",
        )
        db.add(hook)
        db.commit()
        return hook


@pytest.fixture
def processor_stub():
    return ProcessorStub()


@pytest.fixture
def processor(processor_stub):
    return ProcessorClient(
        "https://processor.test/v1",
        "test-processor-key",
        timeout_seconds=1.0,
        total_timeout_seconds=2.0,
        max_retries=2,
        backoff_base_seconds=0.0,
        transport=httpx.MockTransport(processor_stub),
    )


@pytest.fixture
def facade(session_factory, processor):
    return PaymentFacade(
        session_factory,
        processor,
        platform_url=PLATFORM_URL,
        fiat_currencies=FIAT,
        pay_currencies=CRYPTO,
    )


@pytest.fixture
def merchant_endpoint():
    return MerchantEndpoint()


@pytest.fixture
def notifier(session_factory, merchant_endpoint):
    return MerchantNotifier(
        session_factory,
        algorithm="sha512",
        timeout_seconds=1.0,
        max_attempts=3,
        backoff_base_seconds=0.0,
        transport=httpx.MockTransport(merchant_endpoint),
    )


@pytest.fixture
def verifier():
    return WebhookVerifier(WEBHOOK_SECRET, "sha512")


@pytest.fixture
def webhook_service(session_factory, verifier, facade, notifier):
    return WebhookService(session_factory, verifier, facade, notifier)


@pytest.fixture
def authenticator(session_factory):
    return ApiKeyAuthenticator(session_factory, SIGNING_SECRET)
