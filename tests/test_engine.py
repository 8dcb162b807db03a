import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from card_checkout.database import Base
from card_checkout.engine import AuthorizationEngine, CONNECTION_ERROR_MESSAGE
from card_checkout.errors import GatewayConnectionError, GatewayRejected, NoChargeToRefundError
from card_checkout.schemas import CheckoutSession, OrderContext, Outcome, SessionStatus
from card_checkout.store import SessionStore

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_engine.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def gateway(mocker):
    gw = mocker.Mock()
    gw.sale.return_value = {"status": "success", "data": {"id": "tx_1", "status": "pending_settlement"}}
    return gw


@pytest.fixture
def provider(gateway):
    return AuthorizationEngine(gateway, SessionStore(TestingSessionLocal))


def make_session(**fields):
    fields.setdefault("session_id", "cs_1")
    return CheckoutSession(**fields)


def test_scenario_a_captures_and_returns_gateway_ref(provider, gateway):
    session = make_session(amount=2500, currency_code="USD", token="tok_abc")

    result = provider.authorize(session, OrderContext())

    assert result.outcome == Outcome.CAPTURED
    assert result.gateway_ref == "tx_1"
    gateway.sale.assert_called_once_with(
        token="tok_abc", amount=2500, currency="USD", reference="cs_1", vault=True
    )


def test_scenario_b_zero_amount_never_reaches_gateway(provider, gateway):
    session = make_session(amount=0, currency_code="USD", token="tok_abc")

    result = provider.authorize(session, OrderContext())

    assert result.outcome == Outcome.ERROR
    assert result.error_kind == "InvalidAmountError"
    assert gateway.sale.call_count == 0


@pytest.mark.parametrize("amount", [None, 0, -100, "12.5"])
def test_non_positive_or_unset_amount_is_rejected(provider, gateway, amount):
    session = make_session(amount=None, currency_code="USD", token="tok_abc", data={"amount": amount})

    result = provider.authorize(session, OrderContext())

    assert result.error_kind == "InvalidAmountError"
    assert result.gateway_ref is None
    gateway.sale.assert_not_called()


def test_scenario_c_decline_passes_processor_message_through(provider, gateway):
    gateway.sale.side_effect = GatewayRejected("card_declined", status=402, body={"message": "card_declined"})
    session = make_session(amount=2500, currency_code="USD", token="tok_abc")

    result = provider.authorize(session, OrderContext())

    assert result.outcome == Outcome.ERROR
    assert result.error_kind == "GatewayRejected"
    assert result.error_message == "card_declined"
    assert result.data["fluidpay_error"] == {"message": "card_declined"}


def test_transport_failure_maps_to_connection_error(provider, gateway):
    gateway.sale.side_effect = GatewayConnectionError("timed out")
    session = make_session(amount=2500, currency_code="USD", token="tok_abc")

    result = provider.authorize(session, OrderContext())

    assert result.error_kind == "ConnectionError"
    assert result.error_message == CONNECTION_ERROR_MESSAGE
    assert gateway.sale.call_count == 1


def test_success_without_transaction_id_is_a_rejection(provider, gateway):
    gateway.sale.return_value = {"status": "success", "msg": "odd", "data": {}}
    session = make_session(amount=2500, currency_code="USD", token="tok_abc")

    result = provider.authorize(session, OrderContext())

    assert result.error_kind == "GatewayRejected"
    assert result.gateway_ref is None


@pytest.mark.parametrize("session_fields,context", [
    ({"data": {}}, OrderContext()),
    ({"data": {"metadata": {}}}, OrderContext(metadata={})),
    ({"token": "", "data": {"token": ""}}, OrderContext()),
])
def test_missing_token_under_every_field_makes_no_request(provider, gateway, session_fields, context):
    session = make_session(amount=2500, currency_code="USD", **session_fields)

    result = provider.authorize(session, context)

    assert result.error_kind == "MissingTokenError"
    gateway.sale.assert_not_called()


@pytest.mark.parametrize("session_fields,context,expected", [
    ({"token": "tok_top", "data": {"token": "tok_data"}}, OrderContext(), "tok_top"),
    ({"data": {"token": "tok_data", "metadata": {"fluidpay_token": "tok_meta"}}}, OrderContext(), "tok_data"),
    ({"data": {}}, OrderContext(metadata={"fluidpay_token": "tok_meta"}), "tok_meta"),
    ({"data": {"fluidpay_payment_method_id": "pm_legacy"}}, OrderContext(), "pm_legacy"),
])
def test_token_lookup_priority(provider, gateway, session_fields, context, expected):
    session = make_session(amount=2500, currency_code="usd", **session_fields)

    provider.authorize(session, context)

    assert gateway.sale.call_args.kwargs["token"] == expected
    assert gateway.sale.call_args.kwargs["currency"] == "USD"


def test_order_context_amount_wins_over_session(provider, gateway):
    session = make_session(amount=100, currency_code="USD", token="tok_abc", data={"amount": 50})

    provider.authorize(session, OrderContext(amount=2500, currency_code="eur", reference="order_9"))

    kwargs = gateway.sale.call_args.kwargs
    assert kwargs["amount"] == 2500
    assert kwargs["currency"] == "EUR"
    assert kwargs["reference"] == "order_9"


def test_captured_result_keeps_prior_session_data(provider, gateway):
    gateway.sale.return_value = {
        "status": "success",
        "data": {"id": "tx_2", "payment_method": {"token": "vault_1"}},
    }
    session = make_session(amount=2500, currency_code="USD", token="tok_abc",
                           data={"created_at": "2024-01-01", "amount": 2500})

    result = provider.authorize(session, OrderContext())

    assert result.data["created_at"] == "2024-01-01"
    assert result.data["fluidpay"]["id"] == "tx_2"
    assert result.data["fluidpay"]["vault_token"] == "vault_1"


def test_capture_is_a_pass_through(provider, gateway):
    session = make_session(status=SessionStatus.CAPTURED, gateway_ref="tx_1", amount=2500)

    assert provider.capture(session) == session
    assert gateway.method_calls == []


def test_cancel_without_charge_makes_no_gateway_call(provider, gateway):
    session = make_session(amount=2500, data={"foo": "bar"})

    cancelled = provider.cancel(session)

    gateway.void.assert_not_called()
    assert cancelled.data == {"foo": "bar"}
    assert cancelled.status == SessionStatus.CANCELLED


def test_void_failure_does_not_block_cancel(provider, gateway):
    gateway.void.side_effect = GatewayConnectionError("down")
    session = make_session(status=SessionStatus.CAPTURED, gateway_ref="tx_1", data={"foo": "bar"})

    cancelled = provider.void(session)

    gateway.void.assert_called_once_with("tx_1")
    assert cancelled.status == SessionStatus.CANCELLED
    assert cancelled.data == {"foo": "bar"}


def test_scenario_d_refund_without_charge_fails_fast(provider, gateway):
    with pytest.raises(NoChargeToRefundError):
        provider.refund(make_session(amount=2500), 500)
    assert gateway.method_calls == []


def test_partial_refund_is_recorded(provider, gateway):
    gateway.refund.return_value = {"status": "success", "data": {"id": "rf_1"}}
    session = make_session(status=SessionStatus.CAPTURED, gateway_ref="tx_1", amount=2500)

    refunded = provider.refund(session, 500)

    gateway.refund.assert_called_once_with("tx_1", 500)
    assert refunded.status == SessionStatus.REFUNDED
    assert refunded.data["refunds"] == [{"amount": 500, "id": "rf_1", "status": "succeeded"}]


def test_refund_gateway_failure_is_logged_not_raised(provider, gateway):
    gateway.refund.side_effect = GatewayRejected("already settled", status=400)
    session = make_session(status=SessionStatus.CAPTURED, gateway_ref="tx_1", amount=2500)

    refunded = provider.refund(session, 500)

    assert refunded.data["refunds"][0]["status"] == "failed"
    assert refunded.data["refunds"][0]["error"] == "already settled"


def test_initiate_copies_amount_into_data(provider, gateway):
    session = provider.initiate(OrderContext(amount=2500, currency_code="usd"), cart_id="cart_1")

    assert session.status == SessionStatus.PENDING
    assert session.currency_code == "USD"
    assert session.data == {"amount": 2500, "currency_code": "USD"}
    assert gateway.method_calls == []


def test_authorize_session_persists_captured_state(provider, gateway):
    store = provider.store
    store.create(make_session(amount=2500, currency_code="USD", token="tok_abc"))

    provider.authorize_session("cs_1", OrderContext())

    stored = store.get("cs_1")
    assert stored.status == SessionStatus.CAPTURED
    assert stored.gateway_ref == "tx_1"


def test_authorize_session_does_not_charge_twice(provider, gateway):
    store = provider.store
    store.create(make_session(amount=2500, currency_code="USD", token="tok_abc"))

    first = provider.authorize_session("cs_1", OrderContext())
    second = provider.authorize_session("cs_1", OrderContext())

    assert first.gateway_ref == second.gateway_ref == "tx_1"
    assert gateway.sale.call_count == 1


def test_authorize_session_records_error(provider, gateway):
    store = provider.store
    store.create(make_session(amount=0, currency_code="USD", token="tok_abc"))

    provider.authorize_session("cs_1", OrderContext())

    stored = store.get("cs_1")
    assert stored.status == SessionStatus.ERROR
    assert stored.last_error.kind == "InvalidAmountError"


def test_concurrent_authorize_on_same_session_issues_one_sale(provider, gateway):
    store = provider.store
    store.create(make_session(amount=2500, currency_code="USD", token="tok_abc"))
    results = []

    def run():
        results.append(provider.authorize_session("cs_1", OrderContext()))

    threads = [threading.Thread(target=run) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert gateway.sale.call_count == 1
    assert {r.gateway_ref for r in results} == {"tx_1"}


@pytest.mark.parametrize("amount", [float("nan"), float("inf"), "nan", "inf", "-inf"])
def test_non_finite_amount_is_rejected_not_raised(provider, gateway, amount):
    session = make_session(currency_code="USD", token="tok_abc", data={"amount": amount})

    result = provider.authorize(session, OrderContext())

    assert result.outcome == Outcome.ERROR
    assert result.error_kind == "InvalidAmountError"
    gateway.sale.assert_not_called()


def test_non_finite_amount_through_authorize_session_persists_error(provider, gateway):
    store = provider.store
    store.create(make_session(currency_code="USD", token="tok_abc", data={"amount": "inf"}))

    result = provider.authorize_session("cs_1", OrderContext())

    assert result.error_kind == "InvalidAmountError"
    assert store.get("cs_1").status == SessionStatus.ERROR


@pytest.mark.parametrize("undo", ["cancel", "refund"])
def test_voided_or_refunded_session_is_never_charged_again(provider, gateway, undo):
    store = provider.store
    gateway.refund.return_value = {"status": "success", "data": {"id": "rf_1"}}
    store.create(make_session(amount=2500, currency_code="USD", token="tok_abc"))
    provider.authorize_session("cs_1", OrderContext())
    session = store.get("cs_1")
    store.save(provider.cancel(session) if undo == "cancel" else provider.refund(session, 2500))
    gateway.sale.return_value = {"status": "success", "data": {"id": "tx_2"}}

    result = provider.authorize_session("cs_1", OrderContext())

    assert result.outcome == Outcome.ERROR
    assert result.error_kind == "ValidationError"
    assert gateway.sale.call_count == 1
    stored = store.get("cs_1")
    assert stored.gateway_ref == "tx_1"
    assert stored.status == (SessionStatus.CANCELLED if undo == "cancel" else SessionStatus.REFUNDED)


@pytest.mark.parametrize("status", [SessionStatus.PENDING, SessionStatus.ERROR])
def test_session_holding_a_gateway_ref_is_not_charged_again(provider, gateway, status):
    store = provider.store
    store.create(make_session(amount=2500, currency_code="USD", token="tok_abc",
                              status=status, gateway_ref="tx_1"))

    result = provider.authorize_session("cs_1", OrderContext())

    assert result.error_kind == "ValidationError"
    gateway.sale.assert_not_called()
