import hashlib
import hmac
import json
import logging
import time

import httpx

from app import config
from app.errors import NotifierError

logger = logging.getLogger(__name__)


def build_signed_headers(payload: dict, secret: str):
    """Serialize ``payload`` and sign ``"{timestamp}.{body}"`` with HMAC-SHA256."""
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    timestamp = str(int(time.time()))
    signature = hmac.new(
        secret.encode(), f"{timestamp}.{raw}".encode(), hashlib.sha256
    ).hexdigest()
    return raw, signature, timestamp


def notify_order_paid(event: dict) -> None:
    if not config.WAREHOUSE_WEBHOOK_URL or not config.WAREHOUSE_WEBHOOK_SECRET:
        logger.info("Warehouse webhook not configured, skipping notification")
        return

    raw, signature, timestamp = build_signed_headers(event, config.WAREHOUSE_WEBHOOK_SECRET)
    try:
        response = httpx.post(
            config.WAREHOUSE_WEBHOOK_URL,
            content=raw.encode(),
            headers={
                "Content-Type": "application/json",
                "X-Signature": signature,
                "X-Timestamp": timestamp,
            },
            timeout=config.HTTP_TIMEOUT_SECONDS,
        )
    except httpx.HTTPError as exc:
        raise NotifierError(f"Warehouse webhook request failed: {exc}") from exc

    if response.status_code >= 400:
        raise NotifierError(f"Warehouse webhook failed: {response.status_code} {response.text}")


def notify_order_paid_safely(event: dict) -> bool:
    # Settlement already happened; a failed notification is retried out of band.
    try:
        notify_order_paid(event)
    except Exception:
        logger.exception("Failed to notify warehouse about order %s", event.get("order_id"))
        return False
    return True


def build_order_paid_event(session, *, order_id, order_number, amount, paid_at,
                           gateway, reference_code=None, address=None) -> dict:
    provider = "cod" if session.payment_method == "cod" else "sepay"
    lines = [
        {
            "sku": line["sku"],
            "variant_id": line["variant_id"],
            "quantity": line["quantity"],
            "price": float(line["price"]["amount"]),
            "title": line["title"],
            "variant_title": line.get("variant_title"),
        }
        for line in session.lines_snapshot
        if line.get("sku") and line.get("variant_id")
    ]
    shipping = dict(address or session.shipping_address or {})
    shipping["province"] = shipping.get("province") or shipping.get("city") or ""
    name = " ".join(filter(None, [shipping.get("first_name"), shipping.get("last_name")])) or None
    shipping["name"] = name
    return {
        "event": "order.paid",
        "provider": provider,
        "order_id": order_id,
        "order_number": order_number,
        "payment_code": session.payment_code,
        "amount": amount,
        "currency": session.currency,
        "paid_at": paid_at.isoformat(),
        "reference_code": reference_code or session.payment_code,
        "gateway": gateway,
        "line_items": lines,
        "customer": {
            "email": session.email or "noemail@onlyperf.local",
            "name": name,
            "phone": shipping.get("phone_number"),
        },
        "shipping_address": shipping,
    }
