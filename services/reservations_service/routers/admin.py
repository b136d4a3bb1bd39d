"""Operator endpoints: dashboard stats, order management and the sweeper."""

import math
import uuid
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.emails.client import EmailClient, get_email_client
from libs.common.logging import get_logger
from libs.db.session import get_async_db
from services.reservations_service.models import (
    Customer,
    Order,
    OrderStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
    Trip,
)
from services.reservations_service.schemas import (
    AdminOrderListResponse,
    AdminStatsResponse,
    CancelOrderRequest,
    CancelOrderResponse,
    MarkPaidRequest,
    MarkPaidResponse,
    OrderResponse,
    OrderStats,
    SweepResponse,
)
from services.reservations_service.services.expiry import run_sweep
from services.reservations_service.services.settlement import (
    cancel_manual_transfer_order,
    mark_manual_transfer_paid,
)
from sqlalchemy import and_, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


def _overdue_manual_transfer_condition():
    """SUBMITTED orders whose pending bank transfer is older than the overdue window."""
    cutoff = utc_now() - timedelta(hours=get_settings().MANUAL_TRANSFER_OVERDUE_HOURS)
    return and_(
        Order.status == OrderStatus.SUBMITTED,
        Order.payments.any(
            and_(
                Payment.provider == PaymentProvider.MANUAL_TRANSFER,
                Payment.status == PaymentStatus.PENDING,
                Payment.created_at <= cutoff,
            )
        ),
    )


@router.get("/stats", response_model=AdminStatsResponse)
async def get_stats(
    _admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Dashboard counters."""
    overdue_hours = get_settings().MANUAL_TRANSFER_OVERDUE_HOURS

    total = (await db.execute(select(func.count()).select_from(Order))).scalar() or 0
    pending = (
        await db.execute(
            select(func.count()).select_from(Order).where(Order.status == OrderStatus.SUBMITTED)
        )
    ).scalar() or 0
    paid = (
        await db.execute(
            select(func.count()).select_from(Order).where(Order.status == OrderStatus.CONFIRMED)
        )
    ).scalar() or 0
    overdue = (
        await db.execute(
            select(func.count())
            .select_from(Order)
            .where(_overdue_manual_transfer_condition())
        )
    ).scalar() or 0
    revenue = (
        await db.execute(
            select(func.coalesce(func.sum(Order.total_cents), 0)).where(
                Order.status == OrderStatus.CONFIRMED
            )
        )
    ).scalar() or 0
    trips_total = (await db.execute(select(func.count()).select_from(Trip))).scalar() or 0
    customers_total = (
        await db.execute(select(func.count()).select_from(Customer))
    ).scalar() or 0

    return AdminStatsResponse(
        orders=OrderStats(
            total=total,
            pending=pending,
            paid=paid,
            overdue_manual_transfers=overdue,
            overdue_manual_transfers_hours=overdue_hours,
        ),
        revenue_cents=int(revenue),
        trips_total=trips_total,
        customers_total=customers_total,
    )


@router.get("/orders", response_model=AdminOrderListResponse)
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    search: Optional[str] = None,
    overdue_manual_transfers: bool = False,
    _admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """List orders newest first (paginated, filterable by status and number/email)."""
    query = select(Order)
    count_query = select(func.count()).select_from(Order)

    if overdue_manual_transfers:
        condition = _overdue_manual_transfer_condition()
        query = query.where(condition)
        count_query = count_query.where(condition)

    if status_filter:
        query = query.where(Order.status == status_filter)
        count_query = count_query.where(Order.status == status_filter)
    if search:
        pattern = f"%{search.strip()}%"
        condition = or_(
            Order.order_number.ilike(pattern),
            Order.customer_email.ilike(pattern),
            Order.customer_name.ilike(pattern),
        )
        query = query.where(condition)
        count_query = count_query.where(condition)

    total = (await db.execute(count_query)).scalar() or 0
    result = await db.execute(
        query.order_by(desc(Order.created_at)).offset((page - 1) * limit).limit(limit)
    )
    orders = list(result.scalars().all())

    return AdminOrderListResponse(
        orders=[OrderResponse.model_validate(o) for o in orders],
        page=page,
        limit=limit,
        total=total,
        total_pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order_detail(
    order_id: uuid.UUID,
    _admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    order = await db.get(Order, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return OrderResponse.model_validate(order)


@router.post("/orders/{order_id}/manual-transfer/mark-paid", response_model=MarkPaidResponse)
async def mark_order_paid(
    order_id: uuid.UUID,
    body: Optional[MarkPaidRequest] = Body(None),
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
    email_client: EmailClient = Depends(get_email_client),
):
    """
    Confirm that a manual bank transfer for the order arrived.

    Safe to repeat: a second call reports ``was_already_paid`` and grants
    nothing.
    """
    body = body or MarkPaidRequest()
    settlement = await mark_manual_transfer_paid(
        db,
        order_id=order_id,
        payment_id=body.payment_id,
        marked_by=admin.user_id,
    )
    order = settlement.order

    email_sent = False
    if not settlement.was_already_paid:
        logger.info("Order %s marked paid by %s", order.order_number, admin.user_id)
        try:
            email_sent = await email_client.send_payment_confirmation(
                to_email=order.customer_email,
                order_number=order.order_number,
                total_cents=order.total_cents,
                points_earned=settlement.points_earned,
                customer_name=order.customer_name,
                currency=order.currency,
            )
        except Exception as exc:
            logger.warning(
                "Failed to send payment confirmation for %s: %s", order.order_number, exc
            )

    return MarkPaidResponse(
        order_id=order.id,
        order_number=order.order_number,
        order_status=order.status,
        payment_id=settlement.payment.id,
        was_already_paid=settlement.was_already_paid,
        earned_applied=settlement.points_earned,
        email_sent=email_sent,
    )


@router.post("/orders/{order_id}/manual-transfer/cancel", response_model=CancelOrderResponse)
async def cancel_order_admin(
    order_id: uuid.UUID,
    body: Optional[CancelOrderRequest] = Body(None),
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Cancel an unpaid manual-transfer order, releasing its seats and spent points."""
    body = body or CancelOrderRequest()
    result = await cancel_manual_transfer_order(
        db, order_id=order_id, reason=f"{body.reason} (by {admin.user_id})"
    )
    return CancelOrderResponse(
        order_id=result.order.id,
        order_number=result.order.order_number,
        order_status=result.order.status,
        released_seats=result.released_seats,
        released_points=result.released_points,
    )


@router.post("/sweep", response_model=SweepResponse)
async def trigger_sweep(
    _admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Run the expiry sweeper now instead of waiting for the worker."""
    result = await run_sweep(db)
    return SweepResponse(**result.as_dict())
