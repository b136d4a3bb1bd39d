"""Checkout session and magic-link request/response schemas."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field
from services.reservations_service.models.enums import CheckoutSessionStatus


class CartLine(BaseModel):
    trip_id: uuid.UUID
    qty: int = Field(..., ge=1, le=5)
    departure_point_id: Optional[uuid.UUID] = None
    unit_price_cents: Optional[int] = Field(None, ge=0)


class CreateSessionRequest(BaseModel):
    email: EmailStr
    cart: list[CartLine] = Field(..., min_length=1)


class CreateSessionResponse(BaseModel):
    session_id: uuid.UUID
    status: CheckoutSessionStatus
    expires_at: datetime
    loyalty_verified: bool = False
    has_loyalty_points: bool
    preview_points_available: int


class PricedCartLine(CartLine):
    trip_name: str
    line_total_cents: int


class SessionResponse(BaseModel):
    session_id: uuid.UUID
    status: CheckoutSessionStatus
    customer_email: str
    cart: list[PricedCartLine]
    cart_total_cents: int
    points_cap: int
    points_reserved: int
    loyalty_verified: bool
    expires_at: datetime


class UpdateCartRequest(BaseModel):
    cart: list[CartLine] = Field(..., min_length=1)


class ApplyPointsRequest(BaseModel):
    points: int = Field(..., ge=0)


class MagicLinkRequest(BaseModel):
    email: EmailStr


class MagicLinkResponse(BaseModel):
    """Always the same message, whether or not an account exists."""

    message: str
    # Only echoed outside production for manual testing.
    token: Optional[str] = None
