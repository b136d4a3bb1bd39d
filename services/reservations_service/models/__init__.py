"""Reservations service models package.

Re-exports every model and enum so that SQLAlchemy's mapper registry and
Alembic see all tables on a single import.
"""

from services.reservations_service.models.checkout import (  # noqa: F401
    CheckoutSession,
    MagicLinkToken,
)
from services.reservations_service.models.enums import (  # noqa: F401
    CheckoutSessionStatus,
    DocumentType,
    InvoiceType,
    LoyaltyTxnType,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
    TripAvailability,
    enum_values,
)
from services.reservations_service.models.loyalty import (  # noqa: F401
    Customer,
    LoyaltyAccount,
    LoyaltyTransaction,
)
from services.reservations_service.models.order import (  # noqa: F401
    Order,
    OrderItem,
    Payment,
)
from services.reservations_service.models.trip import DeparturePoint, Trip  # noqa: F401

__all__ = [
    # Enums
    "CheckoutSessionStatus",
    "DocumentType",
    "InvoiceType",
    "LoyaltyTxnType",
    "OrderStatus",
    "PaymentProvider",
    "PaymentStatus",
    "TripAvailability",
    "enum_values",
    # Inventory
    "Trip",
    "DeparturePoint",
    # Customers & loyalty
    "Customer",
    "LoyaltyAccount",
    "LoyaltyTransaction",
    # Checkout
    "CheckoutSession",
    "MagicLinkToken",
    # Orders & payments
    "Order",
    "OrderItem",
    "Payment",
]
