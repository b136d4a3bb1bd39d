"""Enum definitions for reservations service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class TripAvailability(str, enum.Enum):
    OPEN = "open"
    WAITLIST = "waitlist"
    CLOSED = "closed"


class CheckoutSessionStatus(str, enum.Enum):
    PENDING = "pending"
    # Checkout completed (order submitted); payment is tracked on Order/Payment.
    PAID = "paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class LoyaltyTxnType(str, enum.Enum):
    EARN = "earn"
    SPEND = "spend"


class OrderStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentProvider(str, enum.Enum):
    GATEWAY = "gateway"
    MANUAL_TRANSFER = "manual_transfer"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class DocumentType(str, enum.Enum):
    ID_CARD = "id_card"
    PASSPORT = "passport"


class InvoiceType(str, enum.Enum):
    RECEIPT = "receipt"
    INVOICE_PERSONAL = "invoice_personal"
    INVOICE_COMPANY = "invoice_company"
