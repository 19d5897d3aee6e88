"""Checkout session lifecycle: creation, status reads and lazy expiry.

A ``pending`` session past its ``expires_at`` is flipped to ``expired`` by
whichever read reaches it first. Every read path goes through
``apply_lazy_expiry``; there is no scheduler that the reads depend on.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional
from urllib.parse import urlencode

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import config, payment_code
from app.errors import CheckoutValidationError, NotFoundError
from app.models import CheckoutSession, utcnow
from app.schemas import BankDetails, CheckoutRequest, CheckoutSessionState, CheckoutSessionSummary
from app.shopify_service import fetch_cart

logger = logging.getLogger(__name__)

QR_IMAGE_BASE_URL = "https://qr.sepay.vn/img"
PAYMENT_CODE_ATTEMPTS = 5


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back naive; they were written as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def parse_cart_totals(cart: dict):
    total = (cart.get("cost") or {}).get("totalAmount") or {}
    currency = total.get("currencyCode") or "VND"
    try:
        amount = Decimal(total.get("amount") or "0")
    except InvalidOperation:
        return 0, currency
    if not amount.is_finite():
        return 0, currency
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)), currency


def snapshot_cart_lines(cart: dict, fallback_currency: str) -> List[dict]:
    lines = []
    edges = ((cart.get("lines") or {}).get("edges")) or []
    for edge in edges:
        node = (edge or {}).get("node")
        if not node:
            continue
        merchandise = node.get("merchandise") or {}
        if merchandise.get("__typename") != "ProductVariant" or not merchandise.get("id"):
            continue
        quantity = max(0, node.get("quantity") or 0)
        if quantity <= 0:
            continue
        product = merchandise.get("product") or {}
        price = merchandise.get("price") or {}
        lines.append({
            "variant_id": merchandise["id"],
            "quantity": quantity,
            "title": product.get("title") or merchandise.get("title") or "",
            "variant_title": merchandise.get("title"),
            "sku": merchandise.get("sku"),
            "vendor": product.get("vendor"),
            "price": {
                "amount": price.get("amount") or "0",
                "currency_code": price.get("currencyCode") or fallback_currency,
            },
        })
    return lines


def build_qr_image_url(amount: int, code: str) -> str:
    query = urlencode({
        "acc": config.SEPAY_BANK_ACCOUNT,
        "bank": config.SEPAY_BANK_NAME,
        "amount": str(amount),
        "des": code,
        "template": "compact",
        "download": "false",
    })
    return f"{QR_IMAGE_BASE_URL}?{query}"


def build_bank_details() -> BankDetails:
    return BankDetails(
        bin=config.SEPAY_BANK_BIN,
        account_number=config.SEPAY_BANK_ACCOUNT,
        account_name=config.SEPAY_BANK_NAME,
    )


def resolve_identity(request: CheckoutRequest, customer_id: Optional[str]) -> dict:
    """Pick exactly one of the guest bundle or the authenticated customer."""
    if request.is_guest:
        guest = request.guest_customer
        if guest is None:
            raise CheckoutValidationError("Guest checkout requires guest customer information")
        return {
            "is_guest": True,
            "customer_id": None,
            "email": guest.email,
            "guest_email": guest.email,
            "guest_phone": guest.phone,
            "guest_first_name": guest.first_name,
            "guest_last_name": guest.last_name,
        }
    if not customer_id:
        raise CheckoutValidationError("Customer session required for authenticated checkout")
    return {"is_guest": False, "customer_id": customer_id}


def create_session(db: Session, request: CheckoutRequest, customer_id: Optional[str] = None,
                   now: Optional[datetime] = None, before_insert=None) -> CheckoutSession:
    """Snapshot the cart and persist a pending session.

    ``before_insert`` runs after the cart lookup and right before the row is
    written; it may raise to abort the insert.
    """
    identity = resolve_identity(request, customer_id)
    now = now or utcnow()

    cart = fetch_cart(request.cart_id)
    if not cart:
        raise NotFoundError("Cart not found")

    amount, currency = parse_cart_totals(cart)
    if amount <= 0:
        raise CheckoutValidationError("Cart total amount must be greater than zero")

    lines = snapshot_cart_lines(cart, currency)
    if not lines:
        raise CheckoutValidationError("Cart is empty")

    if not identity["is_guest"]:
        identity["email"] = (cart.get("buyerIdentity") or {}).get("email")

    if before_insert is not None:
        before_insert()

    for attempt in range(PAYMENT_CODE_ATTEMPTS):
        session = CheckoutSession(
            id=f"cs_{uuid.uuid4().hex}",
            payment_code=payment_code.generate(cart.get("id") or request.cart_id),
            cart_id=request.cart_id,
            lines_snapshot=lines,
            amount=amount,
            currency=currency,
            payment_method=request.payment_method,
            shipping_address=request.shipping_address.model_dump(),
            discount_codes=request.discount_codes,
            discount_amount=request.discount_amount,
            status="pending",
            expires_at=now + timedelta(minutes=config.CHECKOUT_EXPIRY_MINUTES),
            created_at=now,
            updated_at=now,
            **identity,
        )
        db.add(session)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("Payment code collision on attempt %d for cart %s", attempt + 1, request.cart_id)
            continue
        logger.info(
            "Created %s checkout session %s (code=%s, amount=%s %s)",
            session.payment_method, session.id, session.payment_code, amount, currency,
        )
        return session

    raise CheckoutValidationError("Could not allocate a unique payment code")


def create_checkout_session(db: Session, request: CheckoutRequest, customer_id: Optional[str] = None,
                            now: Optional[datetime] = None) -> CheckoutSessionSummary:
    if request.payment_method != "bank_transfer":
        raise CheckoutValidationError("Checkout sessions are only created for bank transfer payments")
    session = create_session(db, request, customer_id, now=now)
    return CheckoutSessionSummary(
        session_id=session.id,
        payment_code=session.payment_code,
        amount=session.amount,
        currency=session.currency,
        expires_at=as_utc(session.expires_at),
        cart_id=session.cart_id,
        qr_image_url=build_qr_image_url(session.amount, session.payment_code),
        bank=build_bank_details(),
        discount_codes=session.discount_codes,
        discount_amount=session.discount_amount,
    )


def transition_status(db: Session, session_id: str, from_statuses, *conditions, **values) -> bool:
    """Conditionally update a session; True only if its status was still in ``from_statuses``."""
    result = db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.id == session_id, CheckoutSession.status.in_(list(from_statuses)), *conditions)
        .values(updated_at=utcnow(), **values)
    )
    db.commit()
    return result.rowcount == 1


def is_past_expiry(session: CheckoutSession, now: datetime) -> bool:
    # A session linked to an order (COD) waits for cash confirmation, not the clock.
    return (
        session.status == "pending"
        and session.order_id is None
        and session.expires_at is not None
        and now > as_utc(session.expires_at)
    )


def apply_lazy_expiry(db: Session, session: CheckoutSession, now: Optional[datetime] = None) -> CheckoutSession:
    now = now or utcnow()
    if is_past_expiry(session, now):
        if transition_status(db, session.id, ["pending"], status="expired"):
            logger.info("Checkout session %s expired", session.id)
        db.refresh(session)
    return session


def get_session(db: Session, session_id: str, now: Optional[datetime] = None) -> CheckoutSession:
    session = db.get(CheckoutSession, session_id)
    if session is None:
        raise NotFoundError("Session not found")
    return apply_lazy_expiry(db, session, now)


def find_session_by_payment_code(db: Session, code: str, now: Optional[datetime] = None) -> Optional[CheckoutSession]:
    session = db.query(CheckoutSession).filter_by(payment_code=code).first()
    if session is None:
        return None
    return apply_lazy_expiry(db, session, now)


def to_state(session: CheckoutSession) -> CheckoutSessionState:
    return CheckoutSessionState(
        session_id=session.id,
        payment_code=session.payment_code,
        amount=session.amount,
        currency=session.currency,
        expires_at=as_utc(session.expires_at),
        cart_id=session.cart_id,
        qr_image_url=build_qr_image_url(session.amount, session.payment_code),
        bank=build_bank_details(),
        discount_codes=session.discount_codes,
        discount_amount=session.discount_amount,
        status=session.status,
        payment_method=session.payment_method,
        order_id=session.order_id,
        order_number=session.order_number,
        provider_transaction_id=session.provider_transaction_id,
        last_error=session.last_error,
        is_guest=bool(session.is_guest),
    )


def get_checkout_session(db: Session, session_id: str, now: Optional[datetime] = None) -> CheckoutSessionState:
    return to_state(get_session(db, session_id, now))


def list_pending_sessions(db: Session, customer_id: str, now: Optional[datetime] = None) -> List[CheckoutSessionState]:
    now = now or utcnow()
    sessions = (
        db.query(CheckoutSession)
        .filter_by(customer_id=customer_id, status="pending", payment_method="bank_transfer")
        .order_by(CheckoutSession.created_at.desc())
        .all()
    )
    states = []
    for session in sessions:
        apply_lazy_expiry(db, session, now)
        if session.status == "pending":
            states.append(to_state(session))
    return states


def expire_stale_sessions(db: Session, now: Optional[datetime] = None) -> int:
    """Sweep pending sessions past expiry. Only speeds up what reads already do."""
    now = now or utcnow()
    candidates = (
        db.query(CheckoutSession)
        .filter(CheckoutSession.status == "pending", CheckoutSession.order_id.is_(None))
        .all()
    )
    expired = 0
    for session in candidates:
        if is_past_expiry(session, now) and transition_status(db, session.id, ["pending"], status="expired"):
            expired += 1
    if expired:
        logger.info("Expired %d stale checkout sessions", expired)
    return expired
