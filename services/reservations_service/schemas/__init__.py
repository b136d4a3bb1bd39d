"""Reservations service schemas package.

Re-exports all schemas so routers can import from one place.
"""

from services.reservations_service.schemas.admin import (  # noqa: F401
    AdminOrderListResponse,
    AdminStatsResponse,
    CancelOrderRequest,
    CancelOrderResponse,
    MarkPaidRequest,
    MarkPaidResponse,
    OrderStats,
    SweepResponse,
)
from services.reservations_service.schemas.checkout import (  # noqa: F401
    ApplyPointsRequest,
    CartLine,
    CreateSessionRequest,
    CreateSessionResponse,
    MagicLinkRequest,
    MagicLinkResponse,
    PricedCartLine,
    SessionResponse,
    UpdateCartRequest,
)
from services.reservations_service.schemas.orders import (  # noqa: F401
    CreateOrderRequest,
    CreateOrderResponse,
    CustomerIn,
    InvoiceIn,
    ManualTransferInstructions,
    OrderItemIn,
    OrderItemResponse,
    OrderLookupRequest,
    OrderLookupResponse,
    OrderResponse,
    PassengerIn,
    PaymentResponse,
)
from services.reservations_service.schemas.payments import (  # noqa: F401
    StartPaymentRequest,
    StartPaymentResponse,
    WebhookAck,
)

__all__ = [
    # Checkout
    "ApplyPointsRequest",
    "CartLine",
    "CreateSessionRequest",
    "CreateSessionResponse",
    "MagicLinkRequest",
    "MagicLinkResponse",
    "PricedCartLine",
    "SessionResponse",
    "UpdateCartRequest",
    # Orders
    "CreateOrderRequest",
    "CreateOrderResponse",
    "CustomerIn",
    "InvoiceIn",
    "ManualTransferInstructions",
    "OrderItemIn",
    "OrderItemResponse",
    "OrderLookupRequest",
    "OrderLookupResponse",
    "OrderResponse",
    "PassengerIn",
    "PaymentResponse",
    # Payments
    "StartPaymentRequest",
    "StartPaymentResponse",
    "WebhookAck",
    # Admin
    "AdminOrderListResponse",
    "AdminStatsResponse",
    "CancelOrderRequest",
    "CancelOrderResponse",
    "MarkPaidRequest",
    "MarkPaidResponse",
    "OrderStats",
    "SweepResponse",
]
