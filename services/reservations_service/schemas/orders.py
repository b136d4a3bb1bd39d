"""Order creation, lookup and read schemas."""

import re
import uuid
from datetime import date, datetime
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)
from services.reservations_service.models.enums import (
    DocumentType,
    InvoiceType,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
)

DOCUMENT_PATTERNS = {
    DocumentType.ID_CARD: re.compile(r"^[A-Z]{3}\d{6}$"),
    DocumentType.PASSPORT: re.compile(r"^[A-Z]{2}\d{7}$"),
}
TAX_ID_PATTERN = re.compile(r"^\d{10}$")


def normalize_document_number(value: str) -> str:
    return re.sub(r"[\s-]", "", value).upper()


# ============================================================================
# REQUESTS
# ============================================================================


class PassengerIn(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    birth_date: date
    document_type: DocumentType
    document_number: str = Field(..., min_length=1, max_length=32)

    @field_validator("document_number")
    @classmethod
    def normalize_number(cls, v: str) -> str:
        return normalize_document_number(v)

    @model_validator(mode="after")
    def check_document_format(self):
        if not DOCUMENT_PATTERNS[self.document_type].match(self.document_number):
            if self.document_type == DocumentType.ID_CARD:
                raise ValueError("ID card number must be 3 letters followed by 6 digits")
            raise ValueError("Passport number must be 2 letters followed by 7 digits")
        return self


class OrderItemIn(BaseModel):
    trip_id: uuid.UUID
    qty: int = Field(..., ge=1, le=5)
    departure_point_id: Optional[uuid.UUID] = None
    passengers: list[PassengerIn] = Field(default_factory=list)


class CustomerIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=9, max_length=20)


class InvoiceIn(BaseModel):
    type: InvoiceType = InvoiceType.RECEIPT
    company_name: Optional[str] = None
    tax_id: Optional[str] = None
    address: Optional[str] = None

    @model_validator(mode="after")
    def check_company_fields(self):
        if self.type != InvoiceType.INVOICE_COMPANY:
            return self
        if not self.company_name or len(self.company_name.strip()) < 2:
            raise ValueError("Company name is required for a company invoice")
        if not self.tax_id or not TAX_ID_PATTERN.match(self.tax_id):
            raise ValueError("Tax id must be exactly 10 digits")
        if not self.address or len(self.address.strip()) < 5:
            raise ValueError("Company address is required for a company invoice")
        return self


class CreateOrderRequest(BaseModel):
    checkout_session_id: uuid.UUID
    customer: CustomerIn
    items: list[OrderItemIn] = Field(..., min_length=1)
    use_points: bool = False
    invoice: InvoiceIn = Field(default_factory=InvoiceIn)


class OrderLookupRequest(BaseModel):
    order_number: str = Field(..., min_length=1, max_length=32)
    email: EmailStr


# ============================================================================
# RESPONSES
# ============================================================================


class CreateOrderResponse(BaseModel):
    order_id: uuid.UUID
    order_number: str
    status: OrderStatus
    subtotal_cents: int
    discount_cents: int
    points_used: int
    final_total_cents: int
    currency: str


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    trip_id: uuid.UUID
    departure_point_id: Optional[uuid.UUID] = None
    qty: int
    unit_price_cents: int
    passengers: list[dict[str, Any]]


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    provider: PaymentProvider
    status: PaymentStatus
    amount_cents: int
    currency: str
    external_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_number: str
    status: OrderStatus
    customer_name: str
    customer_email: str
    customer_phone: str
    invoice_type: InvoiceType
    subtotal_cents: int
    discount_cents: int
    points_used: int
    total_cents: int
    currency: str
    submitted_at: Optional[datetime] = None
    created_at: datetime
    items: list[OrderItemResponse]
    payments: list[PaymentResponse]


class ManualTransferInstructions(BaseModel):
    bank_account: str
    transfer_title: str
    amount_cents: int
    currency: str


class OrderLookupResponse(BaseModel):
    order: OrderResponse
    payment: Optional[PaymentResponse] = None
    manual_transfer: Optional[ManualTransferInstructions] = None
