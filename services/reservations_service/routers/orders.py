"""Customer-facing order endpoints."""

from fastapi import APIRouter, Depends, Request, status
from libs.common.emails.client import EmailClient, get_email_client
from libs.common.rate_limit import ORDERS_LIMIT, limiter
from libs.db.session import get_async_db
from services.reservations_service.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    OrderLookupRequest,
    OrderLookupResponse,
    OrderResponse,
    PaymentResponse,
)
from services.reservations_service.services.orders import create_order, lookup_order
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=CreateOrderResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(ORDERS_LIMIT)
async def submit_order(
    request: Request,
    payload: CreateOrderRequest,
    db: AsyncSession = Depends(get_async_db),
    email_client: EmailClient = Depends(get_email_client),
):
    """
    Finalize a checkout session into an order.

    Seats are claimed atomically; an oversold trip returns 422 with the
    remaining seat count.
    """
    order = await create_order(db, request=payload, email_client=email_client)
    return CreateOrderResponse(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status,
        subtotal_cents=order.subtotal_cents,
        discount_cents=order.discount_cents,
        points_used=order.points_used,
        final_total_cents=order.total_cents,
        currency=order.currency,
    )


@router.post("/lookup", response_model=OrderLookupResponse)
async def find_order(
    payload: OrderLookupRequest,
    db: AsyncSession = Depends(get_async_db),
):
    order, payment, instructions = await lookup_order(
        db, order_number=payload.order_number, email=payload.email
    )
    return OrderLookupResponse(
        order=OrderResponse.model_validate(order),
        payment=PaymentResponse.model_validate(payment) if payment else None,
        manual_transfer=instructions,
    )
