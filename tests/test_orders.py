import pytest

from app.errors import NotifierError, OrderCreationError, SettlementConflictError
from app.orders import build_order_input, settle_session
from app.schemas import ShippingAddress
from app.sessions import create_session
from app.warehouse import notify_order_paid_safely
from tests.conftest import ADDRESS, ORDER, T0


def test_build_order_input_for_member_with_discount(db, shopify, make_request):
    request = make_request(
        is_guest=False, guest_customer=None, discount_codes=["PERF10"], discount_amount=170000
    )
    session = create_session(db, request, customer_id="7001", now=T0)

    order = build_order_input(session, ShippingAddress.model_validate(ADDRESS))

    assert order["customer"] == {"toAssociate": {"id": "gid://shopify/Customer/7001"}}
    assert order["discountCode"] == {
        "itemFixedDiscountCode": {
            "code": "PERF10",
            "amountSet": {"shopMoney": {"amount": "170000", "currencyCode": "VND"}},
        }
    }
    assert order["email"] == "member@onlyperf.vn"
    assert order["note"] == f"Sepay payment {session.payment_code}"


def test_build_order_input_for_guest_without_discount(db, shopify, make_request):
    session = create_session(db, make_request(), now=T0)

    order = build_order_input(session, ShippingAddress.model_validate(ADDRESS))

    assert "customer" not in order
    assert "discountCode" not in order
    assert order["email"] == "buyer@onlyperf.vn"


def test_settle_is_idempotent_for_same_reference(db, shopify, make_request):
    session = create_session(db, make_request(), now=T0)
    settle_session(db, session, provider_transaction_id="42")

    again = settle_session(db, session, provider_transaction_id="42")

    assert again.already_settled is True
    assert again.order_id == ORDER["id"]
    shopify.create_order.assert_called_once()


def test_settle_rejects_different_reference(db, shopify, make_request):
    session = create_session(db, make_request(), now=T0)
    settle_session(db, session, provider_transaction_id="42")

    with pytest.raises(SettlementConflictError):
        settle_session(db, session, provider_transaction_id="43")
    assert session.provider_transaction_id == "42"


def test_settle_refuses_expired_session_unless_allowed(db, shopify, make_request):
    session = create_session(db, make_request(), now=T0)
    session.status = "expired"
    db.commit()

    with pytest.raises(SettlementConflictError):
        settle_session(db, session, provider_transaction_id="42")
    shopify.create_order.assert_not_called()

    settlement = settle_session(db, session, provider_transaction_id="42", allow_expired=True)
    assert settlement.order_id == ORDER["id"]
    assert session.status == "paid"


def test_notifier_failure_does_not_undo_settlement(db, shopify, make_request, mocker):
    mocker.patch("app.orders.notify_order_paid_safely", side_effect=notify_order_paid_safely)
    notify = mocker.patch("app.warehouse.notify_order_paid", side_effect=NotifierError("Warehouse webhook failed: 500"))
    session = create_session(db, make_request(), now=T0)

    settlement = settle_session(db, session, provider_transaction_id="42", amount_received=1700000)

    assert settlement.order_id == ORDER["id"]
    assert session.status == "paid"
    event = notify.call_args.args[0]
    assert event["event"] == "order.paid"
    assert event["order_id"] == ORDER["id"]
    assert event["line_items"][0]["sku"] == "PERF-TEE-M"
    assert event["customer"]["name"] == "An Nguyen"
    assert event["shipping_address"]["province"] == "Ha Noi"


def test_mark_paid_failure_keeps_created_order_reference(db, shopify, make_request):
    shopify.mark_order_paid.side_effect = RuntimeError("Shopify orderMarkAsPaid failed: 502")
    session = create_session(db, make_request(), now=T0)

    with pytest.raises(OrderCreationError, match="not marked paid"):
        settle_session(db, session, provider_transaction_id="42")

    assert session.status == "failed"
    assert session.order_id == ORDER["id"]
    assert session.order_number == "#1001"
    assert session.provider_transaction_id == "42"
    assert ORDER["id"] in session.last_error
    shopify.notify.assert_not_called()
