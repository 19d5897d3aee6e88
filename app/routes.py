import logging

from fastapi import APIRouter, Depends, HTTPException

from app.auth import optional_customer, require_customer, verify_admin_key
from app.cod import confirm_cod_payment, create_cod_order
from app.database import SessionLocal
from app.errors import (
    CheckoutError,
    CheckoutValidationError,
    CommercePlatformError,
    DuplicateSubmissionError,
    NotFoundError,
    OrderCreationError,
    SettlementConflictError,
)
from app.reconciler import list_unprocessed_transactions
from app.schemas import CheckoutRequest, UnprocessedTransaction
from app.sessions import create_checkout_session, get_checkout_session, list_pending_sessions, to_state

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter(prefix="/admin", dependencies=[Depends(verify_admin_key)])

STATUS_CODES = {
    CheckoutValidationError: 400,
    NotFoundError: 404,
    DuplicateSubmissionError: 409,
    SettlementConflictError: 409,
    OrderCreationError: 502,
}


def to_http_error(exc: CheckoutError) -> HTTPException:
    return HTTPException(status_code=STATUS_CODES.get(type(exc), 400), detail=str(exc))


@router.post("/checkout/sessions")
def create_session_api(request: CheckoutRequest, customer_id=Depends(optional_customer)):
    db = SessionLocal()
    try:
        return create_checkout_session(db, request, customer_id)
    except CheckoutError as exc:
        raise to_http_error(exc)
    except CommercePlatformError as exc:
        logger.error("Cart lookup failed for %s: %s", request.cart_id, exc)
        raise HTTPException(status_code=502, detail="Commerce platform unavailable")
    finally:
        db.close()


@router.get("/checkout/sessions")
def pending_sessions_api(customer_id=Depends(require_customer)):
    db = SessionLocal()
    try:
        return list_pending_sessions(db, customer_id)
    finally:
        db.close()


@router.get("/checkout/sessions/{session_id}")
def session_status_api(session_id: str):
    db = SessionLocal()
    try:
        return get_checkout_session(db, session_id)
    except CheckoutError as exc:
        raise to_http_error(exc)
    finally:
        db.close()


@router.post("/checkout/cod")
def create_cod_order_api(request: CheckoutRequest, customer_id=Depends(optional_customer)):
    db = SessionLocal()
    try:
        return create_cod_order(db, request, customer_id)
    except CheckoutError as exc:
        raise to_http_error(exc)
    except CommercePlatformError as exc:
        logger.error("Cart lookup failed for %s: %s", request.cart_id, exc)
        raise HTTPException(status_code=502, detail="Commerce platform unavailable")
    finally:
        db.close()


@admin_router.post("/sessions/{session_id}/confirm-cod")
def confirm_cod_api(session_id: str):
    db = SessionLocal()
    try:
        return to_state(confirm_cod_payment(db, session_id))
    except CheckoutError as exc:
        raise to_http_error(exc)
    except CommercePlatformError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    finally:
        db.close()


@admin_router.get("/transactions/unprocessed")
def unprocessed_transactions_api():
    db = SessionLocal()
    try:
        return [UnprocessedTransaction.model_validate(t) for t in list_unprocessed_transactions(db)]
    finally:
        db.close()
