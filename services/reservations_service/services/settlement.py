"""Terminal order transitions: settlement (markPaid) and cancellation.

Admin actions, gateway webhooks and the expiry sweeper all converge here, so
loyalty grants and seat/point releases happen exactly once per order.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from fastapi import HTTPException, status
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.reservations_service.models import (
    CheckoutSession,
    CheckoutSessionStatus,
    Order,
    OrderStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
)
from services.reservations_service.services.inventory import release_seats
from services.reservations_service.services.loyalty import (
    calculate_expiration_date,
    earn,
    get_account_for_customer,
    points_to_earn,
    reverse_spend,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass
class SettlementResult:
    order: Order
    payment: Payment
    was_already_paid: bool
    points_earned: int = 0


@dataclass
class CancellationResult:
    order: Order
    already_cancelled: bool = False
    released_seats: int = 0
    released_points: int = 0


async def lock_order(db: AsyncSession, order_id: uuid.UUID) -> Optional[Order]:
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _paid_payment(order: Order) -> Optional[Payment]:
    return next((p for p in order.payments if p.status == PaymentStatus.PAID), None)


def _merge_metadata(payment: Payment, key: str, value: Any) -> None:
    payment.payment_metadata = {**(payment.payment_metadata or {}), key: value}


def _pick_payment_to_settle(
    order: Order,
    payment_id: Optional[uuid.UUID],
    provider: Optional[PaymentProvider],
) -> Optional[Payment]:
    if payment_id is not None:
        return next((p for p in order.payments if p.id == payment_id), None)

    candidates = [p for p in order.payments if provider is None or p.provider == provider]
    pending = [p for p in candidates if p.status == PaymentStatus.PENDING]
    pool = pending or candidates
    if not pool:
        return None
    return max(pool, key=lambda p: p.created_at)


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


async def mark_paid(
    db: AsyncSession,
    *,
    order_id: uuid.UUID,
    payment_id: Optional[uuid.UUID] = None,
    provider: Optional[PaymentProvider] = None,
    paid_at: Optional[datetime] = None,
    provider_payload: Optional[dict] = None,
) -> SettlementResult:
    """Settle an order exactly once.

    If any attempt is already PAID this is a no-op success. Otherwise the
    chosen attempt (or the most recent pending one) becomes PAID, the other
    pending attempts are cancelled, the order is CONFIRMED and the loyalty
    EARN for the order is recorded. When ``provider`` is given and the order
    has no attempt for it, a PAID attempt is created.
    """
    order = await lock_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    already_paid = _paid_payment(order)
    if already_paid is not None:
        await db.commit()
        logger.info("Order %s already settled by payment %s", order.order_number, already_paid.id)
        return SettlementResult(order=order, payment=already_paid, was_already_paid=True)

    if order.status == OrderStatus.CANCELLED:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Order is cancelled"
        )

    now = utc_now()
    payment = _pick_payment_to_settle(order, payment_id, provider)
    if payment is None and payment_id is None and provider is not None:
        payment = Payment(
            order_id=order.id,
            provider=provider,
            status=PaymentStatus.PENDING,
            amount_cents=order.total_cents,
            currency=order.currency,
        )
        order.payments.append(payment)
    if payment is None:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No payment attempt to settle",
        )

    payment.status = PaymentStatus.PAID
    payment.paid_at = paid_at or now
    if provider_payload is not None:
        _merge_metadata(payment, "settlement", provider_payload)

    for other in order.payments:
        if other is not payment and other.status == PaymentStatus.PENDING:
            other.status = PaymentStatus.CANCELLED

    order.status = OrderStatus.CONFIRMED

    points_earned = 0
    if order.customer_id is not None:
        account = await get_account_for_customer(db, order.customer_id)
        if account is not None:
            txn = await earn(
                db,
                account_id=account.id,
                points=points_to_earn(order.total_cents),
                order_id=order.id,
                note=f"earned on order {order.order_number}",
                expires_at=calculate_expiration_date(now),
            )
            points_earned = txn.points if txn else 0

    await db.commit()

    logger.info(
        "Order %s confirmed via %s payment %s (earned=%d)",
        order.order_number,
        payment.provider.value,
        payment.id,
        points_earned,
    )
    return SettlementResult(
        order=order,
        payment=payment,
        was_already_paid=False,
        points_earned=points_earned,
    )


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


async def cancel_order_locked(
    db: AsyncSession,
    order: Order,
    *,
    reason: str,
) -> CancellationResult:
    """Cancel an already-locked order inside the caller's transaction.

    Releases every item's seats, re-credits any points SPEND and marks the
    checkout session CANCELLED. Does not commit.
    """
    if order.status == OrderStatus.CANCELLED:
        return CancellationResult(order=order, already_cancelled=True)

    if _paid_payment(order) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Order already paid - cannot cancel",
        )

    order.status = OrderStatus.CANCELLED
    for payment in order.payments:
        if payment.status == PaymentStatus.PENDING:
            payment.status = PaymentStatus.CANCELLED

    # Same trip_id order as order creation takes its seat claims.
    released_seats = 0
    for item in sorted(order.items, key=lambda i: i.trip_id):
        if await release_seats(db, trip_id=item.trip_id, qty=item.qty) >= 0:
            released_seats += item.qty

    released_points = await reverse_spend(
        db, order_id=order.id, order_number=order.order_number
    )

    result = await db.execute(
        select(CheckoutSession)
        .where(CheckoutSession.id == order.checkout_session_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    session = result.scalar_one_or_none()
    if session is not None:
        session.status = CheckoutSessionStatus.CANCELLED
        session.points_reserved = 0

    logger.info(
        "Cancelled order %s (%s): released_seats=%d released_points=%d",
        order.order_number,
        reason,
        released_seats,
        released_points,
    )
    return CancellationResult(
        order=order,
        released_seats=released_seats,
        released_points=released_points,
    )


async def cancel_order(
    db: AsyncSession,
    *,
    order_id: uuid.UUID,
    reason: str,
) -> CancellationResult:
    """Cancel an order in its own transaction. Idempotent on cancelled orders."""
    order = await lock_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    try:
        result = await cancel_order_locked(db, order, reason=reason)
    except HTTPException:
        await db.rollback()
        raise

    await db.commit()
    return result


async def mark_manual_transfer_paid(
    db: AsyncSession,
    *,
    order_id: uuid.UUID,
    payment_id: Optional[uuid.UUID] = None,
    marked_by: Optional[str] = None,
) -> SettlementResult:
    """Operator confirmation that a bank transfer arrived.

    Only orders paying by manual transfer qualify. Repeating the call after
    the transfer was settled reports ``was_already_paid``.
    """
    order = await lock_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    transfers = [p for p in order.payments if p.provider == PaymentProvider.MANUAL_TRANSFER]
    paid = _paid_payment(order)
    if paid is not None and paid.provider == PaymentProvider.MANUAL_TRANSFER:
        await db.commit()
        return SettlementResult(order=order, payment=paid, was_already_paid=True)

    if order.status == OrderStatus.CANCELLED:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Order is cancelled")
    if paid is not None:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Order already paid through the payment gateway",
        )
    if not transfers:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Order has no manual transfer payment",
        )
    if payment_id is not None and payment_id not in {p.id for p in transfers}:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment is not a manual transfer of this order",
        )

    return await mark_paid(
        db,
        order_id=order.id,
        payment_id=payment_id,
        provider=PaymentProvider.MANUAL_TRANSFER,
        provider_payload={"marked_by": marked_by} if marked_by else None,
    )


async def cancel_manual_transfer_order(
    db: AsyncSession,
    *,
    order_id: uuid.UUID,
    reason: str,
) -> CancellationResult:
    """Operator cancellation of an order waiting for a bank transfer.

    Gateway orders are left to the gateway TTL pass of the sweeper.
    """
    order = await lock_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    if order.status == OrderStatus.CANCELLED:
        await db.commit()
        return CancellationResult(order=order, already_cancelled=True)
    if _paid_payment(order) is not None:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Order already paid - cannot cancel",
        )
    if not any(p.provider == PaymentProvider.MANUAL_TRANSFER for p in order.payments):
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Order has no manual transfer payment",
        )

    result = await cancel_order_locked(db, order, reason=reason)
    await db.commit()
    return result
