"""Payment façade tests: creation, lookup and guarded status changes."""

import asyncio
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from bgpay.common.db import Base, build_engine, make_session_factory
from bgpay.common.errors import InvalidPaymentRequest, InvalidTransition, PaymentNotFound, ProcessorUnavailable
from bgpay.services.merchant_auth.service import AuthenticatedMerchant
from bgpay.services.payments.models import Payment, PaymentTimeline
from bgpay.services.payments.service import PaymentFacade
from bgpay.services.processor.client import ProcessorClient
from tests.fakes import CRYPTO, FIAT, PLATFORM_URL, make_merchant

REQUEST = {"amount": "100.00", "currency": "USD", "pay_currency": "BTC", "description": "Coffee beans"}


def _create(facade, identity, request=REQUEST):
    return asyncio.run(facade.create(identity, request))


def _timeline(session_factory, payment_id):
    with session_factory() as db:
        rows = db.execute(
            select(PaymentTimeline).where(PaymentTimeline.payment_id == payment_id).order_by(PaymentTimeline.created_at)
        ).scalars()
        return [(row.from_state, row.to_state) for row in rows]


def test_create_returns_pending_brand_view(facade, merchant, session_factory):
    identity, _ = merchant

    view = _create(facade, identity)

    assert view.status == "pending"
    assert view.amount == Decimal("100.00")
    assert view.currency == "USD"
    assert view.pay_currency == "BTC"
    assert view.pay_address
    assert view.checkout_url == f"https://pay.bgp.test/checkout/{view.payment_id}"
    assert "external_id" not in view.model_dump()

    with session_factory() as db:
        stored = db.get(Payment, view.payment_id)
    assert stored.external_id is not None
    assert stored.external_id not in view.model_dump_json()
    assert stored.state_version == 1
    assert set(_timeline(session_factory, view.payment_id)) == {(None, "created"), ("created", "pending")}


def test_create_sends_brand_callback_url(facade, merchant, processor_stub):
    identity, _ = merchant

    view = _create(facade, identity)

    body = processor_stub.calls[0].content
    assert b"https://pay.bgp.test/webhooks/processor" in body
    assert view.payment_id.encode() in body


def test_processor_failure_leaves_failed_row(facade, merchant, processor_stub, session_factory):
    identity, _ = merchant
    processor_stub.fail_with = 503

    with pytest.raises(ProcessorUnavailable):
        _create(facade, identity)

    with session_factory() as db:
        payment = db.execute(select(Payment)).scalar_one()
    assert payment.status == "failed"
    assert payment.external_id is None


def test_non_object_processor_reply_leaves_failed_row(facade, merchant, session_factory):
    identity, _ = merchant
    facade.processor = ProcessorClient(
        "https://processor.test/v1",
        "test-processor-key",
        max_retries=2,
        backoff_base_seconds=0.0,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])),
    )

    with pytest.raises(ProcessorUnavailable):
        _create(facade, identity)

    with session_factory() as db:
        payment = db.execute(select(Payment)).scalar_one()
    assert payment.status == "failed"
    assert ("created", "failed") in _timeline(session_factory, payment.payment_id)


def test_unexpected_processor_error_leaves_failed_row(facade, merchant, session_factory, monkeypatch):
    identity, _ = merchant

    async def broken_create_payment(**kwargs):
        raise RuntimeError("quote parsing blew up")

    monkeypatch.setattr(facade.processor, "create_payment", broken_create_payment)

    with pytest.raises(RuntimeError):
        _create(facade, identity)

    with session_factory() as db:
        payment = db.execute(select(Payment)).scalar_one()
    assert payment.status == "failed"
    with session_factory() as db:
        reasons = db.execute(
            select(PaymentTimeline.reason).where(PaymentTimeline.to_state == "failed")
        ).scalars().all()
    assert reasons == ["processor_error:RuntimeError"]


@pytest.mark.parametrize(
    "request_body,field",
    [
        ({**REQUEST, "amount": "0"}, "amount"),
        ({**REQUEST, "amount": "-5"}, "amount"),
        ({**REQUEST, "amount": "1.005"}, "amount"),
        ({**REQUEST, "currency": "JPY"}, "currency"),
        ({**REQUEST, "pay_currency": "DOGE"}, "pay_currency"),
        ({"currency": "USD", "pay_currency": "BTC"}, "amount"),
    ],
)
def test_invalid_requests_are_rejected_before_any_write(
    facade, merchant, processor_stub, session_factory, request_body, field
):
    identity, _ = merchant

    with pytest.raises(InvalidPaymentRequest) as excinfo:
        _create(facade, identity, request_body)

    assert field in {error["field"] for error in excinfo.value.errors}
    assert processor_stub.calls == []
    with session_factory() as db:
        assert db.execute(select(Payment)).first() is None


def test_currency_codes_are_normalised(facade, merchant):
    identity, _ = merchant

    view = _create(facade, identity, {**REQUEST, "currency": "usd", "pay_currency": "btc"})

    assert view.currency == "USD"
    assert view.pay_currency == "BTC"


def test_get_returns_own_payment(facade, merchant):
    identity, _ = merchant
    created = _create(facade, identity)

    fetched = facade.get(identity, created.payment_id)

    assert fetched.payment_id == created.payment_id
    assert fetched.status == "pending"


def test_get_hides_other_merchants_payments(facade, merchant, session_factory):
    identity, _ = merchant
    created = _create(facade, identity)
    other_id, _ = make_merchant(session_factory)
    other = AuthenticatedMerchant(merchant_id=other_id, credential_id="", public_id="")

    with pytest.raises(PaymentNotFound):
        facade.get(other, created.payment_id)
    with pytest.raises(PaymentNotFound):
        facade.get(identity, "does-not-exist")


def test_find_by_external_id(facade, merchant, session_factory):
    identity, _ = merchant
    created = _create(facade, identity)
    with session_factory() as db:
        external_id = db.get(Payment, created.payment_id).external_id

    assert facade.find_by_external_id(external_id).payment_id == created.payment_id
    assert facade.find_by_external_id("0") is None


def test_apply_status_moves_forward_once(facade, merchant, session_factory):
    identity, _ = merchant
    created = _create(facade, identity)

    first = facade.apply_status(created.payment_id, "confirmed", reason="processor_finished")
    again = facade.apply_status(created.payment_id, "confirmed", reason="processor_finished")

    assert first.applied and first.from_state == "pending" and first.status == "confirmed"
    assert not again.applied
    with session_factory() as db:
        assert db.get(Payment, created.payment_id).state_version == 2


def test_apply_status_ignores_events_after_terminal(facade, merchant):
    identity, _ = merchant
    created = _create(facade, identity)
    facade.apply_status(created.payment_id, "expired", reason="processor_expired")

    late = facade.apply_status(created.payment_id, "confirmed", reason="processor_finished")

    assert not late.applied
    assert late.status == "expired"


def test_apply_status_rejects_skipping_pending(facade, merchant, session_factory, processor_stub):
    identity, _ = merchant
    processor_stub.fail_with = 500
    with pytest.raises(ProcessorUnavailable):
        _create(facade, identity)
    with session_factory() as db:
        payment = db.execute(select(Payment)).scalar_one()
        payment.status = "created"
        db.commit()

    with pytest.raises(InvalidTransition):
        facade.apply_status(payment.payment_id, "confirmed", reason="processor_finished")


def test_apply_status_runs_callback_in_transaction(facade, merchant):
    identity, _ = merchant
    created = _create(facade, identity)
    seen = []

    facade.apply_status(
        created.payment_id,
        "failed",
        reason="processor_failed",
        after_apply=lambda db, payment: seen.append(payment.status),
    )

    assert seen == ["failed"]


def test_stale_writer_loses_compare_and_swap(facade, merchant, session_factory):
    identity, _ = merchant
    created = _create(facade, identity)
    with session_factory() as db:
        first_copy = db.get(Payment, created.payment_id)
    with session_factory() as db:
        second_copy = db.get(Payment, created.payment_id)

    with session_factory() as db:
        assert facade._transition(db, first_copy, "confirmed", reason="first", event_id=None)
        db.commit()
    with session_factory() as db:
        assert not facade._transition(db, second_copy, "expired", reason="second", event_id=None)
        db.commit()

    with session_factory() as db:
        stored = db.get(Payment, created.payment_id)
    assert stored.status == "confirmed"
    assert stored.state_version == 2
    assert ("pending", "expired") not in _timeline(session_factory, created.payment_id)


def test_interleaved_writers_apply_exactly_one_transition(tmp_path, processor):
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'payments.db'}")
    Base.metadata.create_all(engine)
    session_factory = make_session_factory(engine)
    facade = PaymentFacade(
        session_factory,
        processor,
        platform_url=PLATFORM_URL,
        fiat_currencies=FIAT,
        pay_currencies=CRYPTO,
    )
    merchant_id, _ = make_merchant(session_factory)
    created = _create(facade, AuthenticatedMerchant(merchant_id=merchant_id, credential_id="", public_id=""))
    competing = []

    def open_session():
        # The first reader lets a second writer finish between its read and its write.
        db = session_factory()
        if competing:
            return db
        read = db.get

        def read_then_yield(entity, ident, **kwargs):
            row = read(entity, ident, **kwargs)
            competing.append("started")
            competing.append(facade.apply_status(created.payment_id, "expired", reason="processor_expired"))
            return row

        db.get = read_then_yield
        return db

    facade.session_factory = open_session
    outcome = facade.apply_status(created.payment_id, "confirmed", reason="processor_finished")
    facade.session_factory = session_factory

    assert competing[1].applied
    assert not outcome.applied
    assert outcome.status == "expired"
    with session_factory() as db:
        stored = db.get(Payment, created.payment_id)
    assert stored.status == "expired"
    assert stored.state_version == 2
    timeline = _timeline(session_factory, created.payment_id)
    assert ("pending", "expired") in timeline
    assert ("pending", "confirmed") not in timeline
    engine.dispose()
