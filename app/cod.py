import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app import config
from app.errors import CheckoutValidationError, DuplicateSubmissionError, SettlementConflictError
from app.models import CheckoutSession, utcnow
from app.orders import settle_session
from app.schemas import CheckoutRequest, CodOrderResult
from app.sessions import as_utc, create_session, get_session, transition_status
from app.shopify_service import mark_order_paid

logger = logging.getLogger(__name__)

MSG_ALREADY_PROCESSING = "A COD order for this cart is already processing. Please try again in a few minutes."


def find_recent_cod_session(db: Session, cart_id: str, now: datetime,
                            exclude_id: Optional[str] = None) -> Optional[CheckoutSession]:
    query = db.query(CheckoutSession).filter_by(cart_id=cart_id, payment_method="cod", status="pending")
    if exclude_id is not None:
        query = query.filter(CheckoutSession.id != exclude_id)
    latest = query.order_by(CheckoutSession.created_at.desc()).first()
    if latest is None:
        return None
    window = timedelta(seconds=config.COD_DUPLICATE_WINDOW_SECONDS)
    if now - as_utc(latest.created_at) < window:
        return latest
    return None


def _reject_recent_submission(db: Session, cart_id: str, now: datetime):
    recent = find_recent_cod_session(db, cart_id, now)
    if recent is not None:
        logger.warning("Rejected duplicate COD submission for cart %s (session %s)", cart_id, recent.id)
        raise DuplicateSubmissionError(MSG_ALREADY_PROCESSING)


def create_cod_order(db: Session, request: CheckoutRequest, customer_id: Optional[str] = None,
                     now: Optional[datetime] = None) -> CodOrderResult:
    """Create the session and the external order in one call.

    The order is final but unpaid; the session stays ``pending`` until cash is
    confirmed with ``confirm_cod_payment``. Order-creation failures propagate
    after the session has been marked ``failed``.

    The duplicate guard runs twice: right before the insert, and again after
    it against every other pending COD session of the cart. A submission that
    finds a rival after inserting fails its own session and backs off, so two
    overlapping clicks can both lose but never both place an order.
    """
    if request.payment_method != "cod":
        raise CheckoutValidationError("Invalid payment method for COD order")

    now = now or utcnow()
    session = create_session(
        db, request, customer_id, now=now,
        before_insert=lambda: _reject_recent_submission(db, request.cart_id, now),
    )

    rival = find_recent_cod_session(db, request.cart_id, now, exclude_id=session.id)
    if rival is not None:
        logger.warning(
            "COD session %s lost to concurrent submission %s for cart %s",
            session.id, rival.id, request.cart_id,
        )
        transition_status(db, session.id, ["pending"], status="failed", last_error=MSG_ALREADY_PROCESSING)
        raise DuplicateSubmissionError(MSG_ALREADY_PROCESSING)

    settlement = settle_session(db, session, gateway="COD", reference_code=session.payment_code)

    return CodOrderResult(
        success=True,
        session_id=session.id,
        order_id=settlement.order_id,
        order_number=settlement.order_number or settlement.order_id,
        message="COD order created",
    )


def confirm_cod_payment(db: Session, session_id: str) -> CheckoutSession:
    """Operator confirmation that cash was collected on delivery."""
    session = get_session(db, session_id)
    if session.payment_method != "cod":
        raise CheckoutValidationError("Only COD sessions can be confirmed")
    if session.status == "paid":
        return session
    if session.status != "pending" or not session.order_id:
        raise SettlementConflictError(f"COD session is {session.status} and has no open order")

    mark_order_paid(session.order_id)
    if not transition_status(db, session.id, ["pending"], status="paid", last_error=None):
        raise SettlementConflictError("COD session changed state during confirmation")
    db.refresh(session)
    logger.info("Confirmed cash receipt for COD session %s (order %s)", session.id, session.order_id)
    return session
