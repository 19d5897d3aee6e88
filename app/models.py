from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text
from app.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class CheckoutSession(Base):
    __tablename__ = "checkout_sessions"

    id = Column(String, primary_key=True)                   # cs_<hex>
    payment_code = Column(String, unique=True, nullable=False, index=True)
    cart_id = Column(String, nullable=False, index=True)
    lines_snapshot = Column(JSON, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="VND")

    email = Column(String)
    customer_id = Column(String, index=True)                 # null for guests
    is_guest = Column(Boolean, nullable=False, default=False)
    guest_email = Column(String)
    guest_phone = Column(String)
    guest_first_name = Column(String)
    guest_last_name = Column(String)

    payment_method = Column(String, nullable=False, default="bank_transfer")  # bank_transfer | cod
    shipping_address = Column(JSON)
    discount_codes = Column(JSON)
    discount_amount = Column(Integer)

    status = Column(String, nullable=False, default="pending")  # pending | paid | failed | expired
    expires_at = Column(DateTime(timezone=True))
    order_id = Column(String)
    order_number = Column(String)
    provider_transaction_id = Column(String)
    last_error = Column(Text)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_checkout_sessions_cart_method_status", "cart_id", "payment_method", "status"),
    )


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(String, primary_key=True)                   # sepay_<hex>
    provider_transaction_id = Column(String, unique=True, nullable=False, index=True)
    gateway = Column(String, nullable=False)
    transaction_date = Column(DateTime(timezone=True), nullable=False)
    account_number = Column(String)
    sub_account = Column(String)
    code = Column(String)
    content = Column(Text)
    reference_code = Column(String)
    transfer_type = Column(String, nullable=False)
    transfer_amount = Column(Integer, nullable=False)
    accumulated = Column(Integer, nullable=False, default=0)
    body = Column(Text)

    payment_code = Column(String, index=True)
    session_id = Column(String)
    processed = Column(Boolean, nullable=False, default=False)
    order_id = Column(String)
    result_success = Column(Boolean)
    result_message = Column(Text)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
