from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

PaymentMethod = Literal["bank_transfer", "cod"]
SessionStatus = Literal["pending", "paid", "failed", "expired"]


class ShippingAddress(BaseModel):
    address1: str = Field(min_length=1)
    address2: Optional[str] = None
    city: str = Field(min_length=1)
    province: Optional[str] = None
    country: str = Field(min_length=1)
    zip: str = Field(min_length=1)
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    phone_number: str = Field(min_length=1)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class GuestCustomer(BaseModel):
    email: EmailStr
    # Vietnamese mobile numbers: 0xxxxxxxxx or +84xxxxxxxxx
    phone: str = Field(pattern=r"^(\+84|84|0)[35789]\d{8}$")
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)

    @field_validator("phone", mode="before")
    @classmethod
    def strip_phone(cls, value):
        if isinstance(value, str):
            return value.replace(" ", "").replace(".", "").replace("-", "")
        return value


class LinePrice(BaseModel):
    amount: str
    currency_code: str


class LineSnapshot(BaseModel):
    variant_id: str = Field(min_length=1)
    quantity: int = Field(ge=0)
    title: str
    variant_title: Optional[str] = None
    sku: Optional[str] = None
    vendor: Optional[str] = None
    price: LinePrice


class CheckoutRequest(BaseModel):
    cart_id: str = Field(min_length=1)
    payment_method: PaymentMethod = "bank_transfer"
    shipping_address: ShippingAddress
    is_guest: bool = False
    guest_customer: Optional[GuestCustomer] = None
    discount_codes: Optional[List[str]] = None
    discount_amount: Optional[int] = Field(default=None, ge=0)

    @field_validator("discount_codes")
    @classmethod
    def check_discount_codes(cls, value):
        if value is not None:
            if len(value) > 1:
                raise ValueError("Only one discount code is allowed")
            for code in value:
                if not 1 <= len(code) <= 50:
                    raise ValueError("Discount code must be 1-50 characters")
        return value


class BankDetails(BaseModel):
    bin: str
    account_number: str
    account_name: str


class CheckoutSessionSummary(BaseModel):
    session_id: str
    payment_code: str
    amount: int
    currency: str
    expires_at: Optional[datetime]
    cart_id: str
    qr_image_url: str
    bank: BankDetails
    discount_codes: Optional[List[str]] = None
    discount_amount: Optional[int] = None


class CheckoutSessionState(CheckoutSessionSummary):
    status: SessionStatus
    payment_method: PaymentMethod
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    last_error: Optional[str] = None
    is_guest: bool = False


class CodOrderResult(BaseModel):
    success: bool
    session_id: str
    order_id: str
    order_number: str
    message: str


class SepayWebhook(BaseModel):
    """Bank-transfer notification as posted by SePay."""

    model_config = ConfigDict(populate_by_name=True)

    id: int
    gateway: str
    transaction_date: datetime = Field(alias="transactionDate")
    account_number: Optional[str] = Field(default=None, alias="accountNumber")
    sub_account: Optional[str] = Field(default=None, alias="subAccount")
    code: Optional[str] = None
    content: str = ""
    transfer_type: Literal["in", "out"] = Field(alias="transferType")
    transfer_amount: int = Field(alias="transferAmount", ge=0)
    accumulated: int = 0
    reference_code: Optional[str] = Field(default=None, alias="referenceCode")
    description: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def none_content_to_empty(cls, value):
        return "" if value is None else value


class ReconciliationResult(BaseModel):
    success: bool
    message: str
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None

    def to_response(self) -> dict:
        data = None
        if self.transaction_id is not None:
            data = {"transaction_id": self.transaction_id, "order_id": self.order_id}
        return {"success": self.success, "message": self.message, "data": data}


class UnprocessedTransaction(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider_transaction_id: str
    gateway: str
    transaction_date: datetime
    transfer_amount: int
    content: Optional[str]
    payment_code: Optional[str]
    session_id: Optional[str]
    result_message: Optional[str]
