"""Single place where a checkout session becomes an external order.

Both the bank-transfer reconciler and the COD settler go through
``settle_session``. The session row is re-read right before the platform call
and written back with a conditional update, so only the first writer attaches
an order. A crash between the platform call and the update is the accepted gap;
a repeated attempt against a session already carrying the same reference
returns without calling the platform again.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.errors import OrderCreationError, SettlementConflictError
from app.models import CheckoutSession, utcnow
from app.schemas import ShippingAddress
from app.sessions import transition_status
from app.shopify_service import (
    build_customer_input,
    build_discount_code_input,
    create_order,
    mark_order_paid,
)
from app.warehouse import build_order_paid_event, notify_order_paid_safely

logger = logging.getLogger(__name__)

INVALID_ADDRESS_MESSAGE = "Invalid shipping address"


@dataclass
class Settlement:
    order_id: str
    order_number: Optional[str]
    already_settled: bool = False


def build_order_input(session: CheckoutSession, address: ShippingAddress) -> dict:
    is_cod = session.payment_method == "cod"
    line_items = [
        {
            "variantId": line["variant_id"],
            "quantity": line["quantity"],
            "sku": line.get("sku"),
            "title": line.get("title"),
            "variantTitle": line.get("variant_title"),
            "vendor": line.get("vendor"),
        }
        for line in session.lines_snapshot
        if line.get("variant_id") and line.get("quantity", 0) > 0
    ]
    # Shopify accepts a single discount code per order.
    discount_code = (session.discount_codes or [None])[0]

    order = {
        "currency": session.currency or "VND",
        "email": session.email,
        "customer": build_customer_input(session.customer_id),
        "tags": ["cod" if is_cod else "sepay", session.payment_code],
        "note": f"{'COD' if is_cod else 'Sepay'} payment {session.payment_code}",
        "shippingAddress": {
            "address1": address.address1,
            "address2": address.address2,
            "city": address.city,
            "province": address.province,
            "country": address.country,
            "zip": address.zip,
            "firstName": address.first_name,
            "lastName": address.last_name,
            "phone": address.phone_number,
        },
        "lineItems": line_items,
        "sourceName": "cod" if is_cod else "sepay_qr",
        "discountCode": build_discount_code_input(
            discount_code, session.discount_amount, session.currency or "VND"
        ),
    }
    if is_cod:
        order["financialStatus"] = "PENDING"
    return {key: value for key, value in order.items() if value is not None}


def _mark_failed(db: Session, session: CheckoutSession, message: str, from_statuses, **values):
    if not transition_status(db, session.id, from_statuses, status="failed", last_error=message, **values):
        logger.warning("Session %s changed state before it could be marked failed", session.id)
    db.refresh(session)


def settle_session(
    db: Session,
    session: CheckoutSession,
    *,
    provider_transaction_id: Optional[str] = None,
    amount_received: Optional[int] = None,
    paid_at: Optional[datetime] = None,
    gateway: Optional[str] = None,
    reference_code: Optional[str] = None,
    allow_expired: bool = False,
) -> Settlement:
    is_cod = session.payment_method == "cod"

    db.refresh(session)
    if session.order_id:
        if session.status == "paid" and session.provider_transaction_id == provider_transaction_id:
            return Settlement(session.order_id, session.order_number, already_settled=True)
        if is_cod and session.status == "pending" and provider_transaction_id is None:
            return Settlement(session.order_id, session.order_number, already_settled=True)
        raise SettlementConflictError("Session is already settled by another payment")

    settleable = ["pending", "expired"] if allow_expired else ["pending"]
    if session.status not in settleable:
        raise SettlementConflictError(f"Session is {session.status} and cannot be settled")

    try:
        address = ShippingAddress.model_validate(session.shipping_address or {})
    except ValidationError as exc:
        logger.error("Invalid shipping address on session %s: %s", session.id, exc)
        _mark_failed(db, session, INVALID_ADDRESS_MESSAGE, settleable)
        raise OrderCreationError(INVALID_ADDRESS_MESSAGE) from exc

    try:
        order = create_order(build_order_input(session, address), send_receipt=True)
    except Exception as exc:
        message = str(exc) or "Failed to create order"
        logger.error("Order creation failed for session %s: %s", session.id, message)
        _mark_failed(db, session, message, settleable)
        raise OrderCreationError(message) from exc

    if not is_cod:
        try:
            mark_order_paid(order["id"])
        except Exception as exc:
            # Keep the order reference so the operator can finish it by hand.
            message = f"Order {order['id']} created but not marked paid: {exc}"
            logger.error("Session %s: %s", session.id, message)
            _mark_failed(
                db, session, message, settleable,
                order_id=order["id"], order_number=order.get("name"),
                provider_transaction_id=provider_transaction_id,
            )
            raise OrderCreationError(message) from exc

    values = {
        "order_id": order["id"],
        "order_number": order.get("name"),
        "last_error": None,
    }
    if not is_cod:
        values["status"] = "paid"
        values["provider_transaction_id"] = provider_transaction_id

    if not transition_status(db, session.id, settleable, CheckoutSession.order_id.is_(None), **values):
        # Known gap: the external order exists but another writer won the session.
        logger.error(
            "Order %s created for session %s but the session was settled concurrently",
            order["id"], session.id,
        )
        db.refresh(session)
        raise SettlementConflictError("Session was settled concurrently")
    db.refresh(session)

    event = build_order_paid_event(
        session,
        order_id=order["id"],
        order_number=order.get("name"),
        amount=amount_received if amount_received is not None else session.amount,
        paid_at=paid_at or utcnow(),
        gateway=gateway or ("COD" if is_cod else "SePay"),
        reference_code=reference_code,
        address=address.model_dump(),
    )
    notify_order_paid_safely(event)

    return Settlement(order["id"], order.get("name"))
