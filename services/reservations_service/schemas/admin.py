"""Operator dashboard schemas."""

import uuid
from typing import Optional

from pydantic import BaseModel, Field
from services.reservations_service.models.enums import OrderStatus
from services.reservations_service.schemas.orders import OrderResponse


class OrderStats(BaseModel):
    total: int
    pending: int
    paid: int
    overdue_manual_transfers: int
    overdue_manual_transfers_hours: int


class AdminStatsResponse(BaseModel):
    orders: OrderStats
    revenue_cents: int
    trips_total: int
    customers_total: int


class AdminOrderListResponse(BaseModel):
    orders: list[OrderResponse]
    page: int
    limit: int
    total: int
    total_pages: int


class MarkPaidRequest(BaseModel):
    # Defaults to the most recent pending transfer.
    payment_id: Optional[uuid.UUID] = None


class MarkPaidResponse(BaseModel):
    success: bool = True
    order_id: uuid.UUID
    order_number: str
    order_status: OrderStatus
    payment_id: Optional[uuid.UUID] = None
    was_already_paid: bool
    earned_applied: int
    email_sent: bool = False


class CancelOrderRequest(BaseModel):
    reason: str = Field("cancelled by operator", min_length=1, max_length=200)


class CancelOrderResponse(BaseModel):
    success: bool = True
    order_id: uuid.UUID
    order_number: str
    order_status: OrderStatus
    released_seats: int = 0
    released_points: int = 0


class SweepResponse(BaseModel):
    expired_sessions: int
    released_points: int
    expired_tokens: int
    expired_gateway_orders: int
    released_seats: int
