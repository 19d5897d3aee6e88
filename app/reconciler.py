"""Bank-transfer webhook reconciliation.

Every inbound ``in`` notification is written to the transaction ledger before
matching, keyed by the provider's own transaction id, and its outcome is
stored on the row. A redelivery of the same id is answered from the ledger
without touching the session again.
"""
import json
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import config
from app.errors import OrderCreationError, SettlementConflictError
from app.models import PaymentTransaction
from app.orders import settle_session
from app.payment_code import extract
from app.schemas import ReconciliationResult, SepayWebhook
from app.sessions import find_session_by_payment_code, transition_status

logger = logging.getLogger(__name__)

MSG_NOT_INCOMING = "Only incoming transfers are processed"
MSG_ALREADY_PROCESSED = "Transaction was already processed"
MSG_RECORDED = "Transaction was recorded but not processed"
MSG_SETTLED = "Payment recorded and order created"
MSG_ALREADY_PAID = "Session is already marked as paid"
MSG_OTHER_PAYMENT = "Session was already settled by another payment"
MSG_NOT_BANK_TRANSFER = "Checkout session is not a bank-transfer session"


def _result_from_ledger(transaction: PaymentTransaction) -> ReconciliationResult:
    if transaction.result_message is None:
        # Row persisted by a delivery that never finished.
        return ReconciliationResult(
            success=transaction.processed,
            message=MSG_ALREADY_PROCESSED if transaction.processed else MSG_RECORDED,
            transaction_id=transaction.id,
            order_id=transaction.order_id,
        )
    return ReconciliationResult(
        success=bool(transaction.result_success),
        message=transaction.result_message,
        transaction_id=transaction.id,
        order_id=transaction.order_id,
    )


def _record(db: Session, transaction: PaymentTransaction, success: bool, message: str, **values) -> ReconciliationResult:
    transaction.result_success = success
    transaction.result_message = message
    for key, value in values.items():
        setattr(transaction, key, value)
    db.commit()
    return _result_from_ledger(transaction)


def _insert_transaction(db: Session, payload: SepayWebhook, code: Optional[str]) -> Optional[PaymentTransaction]:
    transaction = PaymentTransaction(
        id=f"sepay_{uuid.uuid4().hex}",
        provider_transaction_id=str(payload.id),
        gateway=payload.gateway,
        transaction_date=payload.transaction_date,
        account_number=payload.account_number or "",
        sub_account=payload.sub_account or "",
        code=payload.code or "",
        content=payload.content,
        reference_code=payload.reference_code,
        transfer_type=payload.transfer_type,
        transfer_amount=payload.transfer_amount,
        accumulated=payload.accumulated,
        body=json.dumps(payload.model_dump(mode="json", by_alias=True), ensure_ascii=False),
        payment_code=code,
        processed=False,
    )
    db.add(transaction)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same provider id got there first.
        db.rollback()
        return None
    return transaction


def _get_by_provider_id(db: Session, provider_transaction_id: str) -> Optional[PaymentTransaction]:
    return db.query(PaymentTransaction).filter_by(provider_transaction_id=provider_transaction_id).first()


def process_bank_webhook(db: Session, payload: SepayWebhook, now: Optional[datetime] = None) -> ReconciliationResult:
    if payload.transfer_type != "in":
        return ReconciliationResult(success=False, message=MSG_NOT_INCOMING)

    provider_id = str(payload.id)
    existing = _get_by_provider_id(db, provider_id)
    if existing is not None:
        logger.info("Duplicate delivery of provider transaction %s", provider_id)
        return _result_from_ledger(existing)

    code = extract(payload.content)
    transaction = _insert_transaction(db, payload, code)
    if transaction is None:
        return _result_from_ledger(_get_by_provider_id(db, provider_id))

    if code is None:
        logger.info("No payment code in provider transaction %s", provider_id)
        return _record(db, transaction, False, f"No payment code found in content: {payload.content}")

    session = find_session_by_payment_code(db, code, now)
    if session is None:
        logger.info("No checkout session for payment code %s", code)
        return _record(db, transaction, False, f"Checkout session not found for code {code}")

    transaction.session_id = session.id
    db.commit()

    if session.payment_method != "bank_transfer":
        logger.warning(
            "Provider transaction %s matched %s session %s, leaving it untouched",
            provider_id, session.payment_method, session.id,
        )
        return _record(db, transaction, False, MSG_NOT_BANK_TRANSFER)

    if session.status == "paid" and session.provider_transaction_id == provider_id:
        return _record(db, transaction, True, MSG_ALREADY_PAID, processed=True, order_id=session.order_id)

    received = payload.transfer_amount
    if received < session.amount:
        message = f"Insufficient amount. Expected: {session.amount}, received: {received}"
        logger.warning("Session %s: %s", session.id, message)
        if transition_status(db, session.id, ["pending", "expired"], status="failed", last_error=message):
            db.refresh(session)
        return _record(db, transaction, False, message)

    if session.status == "paid":
        logger.warning("Session %s already paid, rejecting provider transaction %s", session.id, provider_id)
        return _record(db, transaction, False, MSG_OTHER_PAYMENT)

    if session.status == "failed":
        return _record(db, transaction, False, f"Checkout session is failed: {session.last_error}")

    allow_expired = False
    if session.status == "expired":
        if config.LATE_PAYMENT_POLICY != "settle":
            message = "Payment received after session expired; held for manual review"
            logger.warning("Session %s: %s (provider transaction %s)", session.id, message, provider_id)
            transition_status(db, session.id, ["expired"], last_error=message)
            return _record(db, transaction, False, message)
        logger.info("Settling late payment for expired session %s", session.id)
        allow_expired = True

    try:
        settlement = settle_session(
            db,
            session,
            provider_transaction_id=provider_id,
            amount_received=received,
            paid_at=payload.transaction_date,
            gateway=payload.gateway,
            reference_code=payload.reference_code,
            allow_expired=allow_expired,
        )
    except SettlementConflictError as exc:
        return _record(db, transaction, False, str(exc))
    except OrderCreationError as exc:
        # Left unprocessed for manual reconciliation.
        return _record(db, transaction, False, str(exc))

    message = MSG_ALREADY_PAID if settlement.already_settled else MSG_SETTLED
    return _record(db, transaction, True, message, processed=True, order_id=settlement.order_id)


def list_unprocessed_transactions(db: Session) -> List[PaymentTransaction]:
    return (
        db.query(PaymentTransaction)
        .filter_by(processed=False)
        .order_by(PaymentTransaction.transaction_date.desc())
        .all()
    )
