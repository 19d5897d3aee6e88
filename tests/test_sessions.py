from datetime import timedelta

import pytest

from app import payment_code
from app.errors import CheckoutValidationError, NotFoundError
from app.models import CheckoutSession
from app.sessions import (
    create_checkout_session,
    create_session,
    expire_stale_sessions,
    get_checkout_session,
    list_pending_sessions,
    parse_cart_totals,
    snapshot_cart_lines,
)
from tests.conftest import T0, build_cart


def test_create_checkout_session_snapshots_cart(db, shopify, make_request):
    summary = create_checkout_session(db, make_request(), now=T0)

    assert summary.amount == 1700000
    assert summary.currency == "VND"
    assert summary.expires_at == T0 + timedelta(minutes=15)
    assert payment_code.is_valid(summary.payment_code)
    assert f"des={summary.payment_code}" in summary.qr_image_url
    assert "amount=1700000" in summary.qr_image_url

    stored = db.get(CheckoutSession, summary.session_id)
    assert stored.status == "pending"
    assert stored.lines_snapshot == [{
        "variant_id": "gid://shopify/ProductVariant/11",
        "quantity": 2,
        "title": "Perf Tee",
        "variant_title": "Size M",
        "sku": "PERF-TEE-M",
        "vendor": "Perf",
        "price": {"amount": "850000.0", "currency_code": "VND"},
    }]
    assert stored.is_guest is True
    assert stored.customer_id is None
    assert stored.guest_email == "buyer@onlyperf.vn"


def test_snapshot_is_not_affected_by_later_cart_changes(db, shopify, make_request):
    session = create_session(db, make_request(), now=T0)
    shopify.fetch_cart.return_value = build_cart(lines=[])

    state = get_checkout_session(db, session.id, now=T0)
    assert state.amount == 1700000
    assert len(db.get(CheckoutSession, session.id).lines_snapshot) == 1


def test_snapshot_skips_non_variants_and_empty_lines():
    cart = build_cart(lines=[
        {"quantity": 0, "merchandise": {"__typename": "ProductVariant", "id": "v0"}},
        {"quantity": 1, "merchandise": {"__typename": "GiftCard", "id": "g1"}},
        {"quantity": 3, "merchandise": {"__typename": "ProductVariant", "id": "v3", "title": "Red"}},
    ])
    lines = snapshot_cart_lines(cart, "VND")
    assert [line["variant_id"] for line in lines] == ["v3"]
    assert lines[0]["price"] == {"amount": "0", "currency_code": "VND"}


def test_parse_cart_totals_rounds_to_whole_units():
    assert parse_cart_totals(build_cart(total="1699999.6")) == (1700000, "VND")
    assert parse_cart_totals(build_cart(total="not-a-number")) == (0, "VND")
    assert parse_cart_totals({"id": "c"}) == (0, "VND")


def test_zero_total_cart_is_rejected(db, shopify, make_request):
    shopify.fetch_cart.return_value = build_cart(total="0.0")
    with pytest.raises(CheckoutValidationError):
        create_checkout_session(db, make_request(), now=T0)
    assert db.query(CheckoutSession).count() == 0


def test_empty_cart_is_rejected(db, shopify, make_request):
    shopify.fetch_cart.return_value = build_cart(lines=[])
    with pytest.raises(CheckoutValidationError, match="Cart is empty"):
        create_checkout_session(db, make_request(), now=T0)
    assert db.query(CheckoutSession).count() == 0


def test_missing_cart_is_not_found(db, shopify, make_request):
    shopify.fetch_cart.return_value = None
    with pytest.raises(NotFoundError):
        create_checkout_session(db, make_request(), now=T0)


def test_guest_checkout_requires_guest_bundle(db, shopify, make_request):
    with pytest.raises(CheckoutValidationError):
        create_checkout_session(db, make_request(guest_customer=None), now=T0)
    shopify.fetch_cart.assert_not_called()


def test_authenticated_checkout_requires_customer(db, shopify, make_request):
    request = make_request(is_guest=False, guest_customer=None)
    with pytest.raises(CheckoutValidationError):
        create_checkout_session(db, request, customer_id=None, now=T0)


def test_authenticated_checkout_uses_customer_identity(db, shopify, make_request):
    request = make_request(is_guest=False, guest_customer=None)
    summary = create_checkout_session(db, request, customer_id="7001", now=T0)

    stored = db.get(CheckoutSession, summary.session_id)
    assert stored.customer_id == "7001"
    assert stored.is_guest is False
    assert stored.email == "member@onlyperf.vn"
    assert stored.guest_email is None


def test_guest_path_ignores_resolved_customer(db, shopify, make_request):
    summary = create_checkout_session(db, make_request(), customer_id="7001", now=T0)
    assert db.get(CheckoutSession, summary.session_id).customer_id is None


def test_cod_is_not_a_bank_transfer_session(db, shopify, make_request):
    with pytest.raises(CheckoutValidationError):
        create_checkout_session(db, make_request(payment_method="cod"), now=T0)


def test_payment_code_collision_is_retried(db, shopify, make_request, mocker):
    mocker.patch("app.payment_code.generate", side_effect=["PERF11111111", "PERF11111111", "PERF22222222"])
    first = create_session(db, make_request(), now=T0)
    second = create_session(db, make_request(cart_id="C2"), now=T0)
    assert first.payment_code == "PERF11111111"
    assert second.payment_code == "PERF22222222"


def test_read_after_expiry_reports_expired(db, shopify, make_request):
    session = create_session(db, make_request(), now=T0)

    assert get_checkout_session(db, session.id, now=T0 + timedelta(minutes=14)).status == "pending"
    for _ in range(3):
        state = get_checkout_session(db, session.id, now=T0 + timedelta(minutes=16))
        assert state.status == "expired"

    db.expire_all()
    assert db.get(CheckoutSession, session.id).status == "expired"


def test_expired_session_stays_expired_even_if_read_earlier(db, shopify, make_request):
    session = create_session(db, make_request(), now=T0)
    get_checkout_session(db, session.id, now=T0 + timedelta(minutes=16))
    assert get_checkout_session(db, session.id, now=T0).status == "expired"


def test_unknown_session_is_not_found(db):
    with pytest.raises(NotFoundError):
        get_checkout_session(db, "cs_missing", now=T0)


def test_list_pending_sessions_hides_expired(db, shopify, make_request):
    request = make_request(is_guest=False, guest_customer=None)
    old = create_session(db, request, customer_id="7001", now=T0)
    fresh = create_session(db, request, customer_id="7001", now=T0 + timedelta(minutes=10))
    create_session(db, request, customer_id="8002", now=T0 + timedelta(minutes=10))

    pending = list_pending_sessions(db, "7001", now=T0 + timedelta(minutes=20))

    assert [s.session_id for s in pending] == [fresh.id]
    db.refresh(old)
    assert old.status == "expired"


def test_expire_stale_sessions_sweep(db, shopify, make_request):
    create_session(db, make_request(), now=T0)
    create_session(db, make_request(cart_id="C2"), now=T0 + timedelta(minutes=10))

    assert expire_stale_sessions(db, now=T0 + timedelta(minutes=20)) == 1
    assert expire_stale_sessions(db, now=T0 + timedelta(minutes=20)) == 0
    assert db.query(CheckoutSession).filter_by(status="expired").count() == 1
