"""Expiry transitions shared by the read path and the background sweeper.

``apply_session_expiry`` is the single place a stale checkout session is
expired. ``expire_session_if_stale`` runs it inline whenever a session is
read, and ``run_sweep`` runs it (plus the token and gateway passes) on a
schedule, so correctness never depends on the sweeper's cadence.
"""

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import ensure_aware, utc_now
from libs.common.logging import get_logger
from services.reservations_service.models import (
    CheckoutSession,
    CheckoutSessionStatus,
    MagicLinkToken,
    Order,
    OrderStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
)
from services.reservations_service.services.settlement import (
    cancel_order_locked,
    lock_order,
)
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

SWEEP_BATCH_SIZE = 500


@dataclass
class SessionExpiry:
    cancelled_order_id: Optional[uuid.UUID] = None
    released_points: int = 0
    released_seats: int = 0
    expired_tokens: int = 0


@dataclass
class SweepResult:
    expired_sessions: int = 0
    released_points: int = 0
    expired_tokens: int = 0
    expired_gateway_orders: int = 0
    released_seats: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def is_expired(session: CheckoutSession, now: datetime) -> bool:
    return ensure_aware(session.expires_at) <= now


async def _select_session(
    db: AsyncSession, session_id: uuid.UUID, *, for_update: bool
) -> Optional[CheckoutSession]:
    stmt = select(CheckoutSession).where(CheckoutSession.id == session_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Session expiry (shared transition)
# ---------------------------------------------------------------------------


async def apply_session_expiry(
    db: AsyncSession,
    session: CheckoutSession,
    *,
    now: datetime,
) -> SessionExpiry:
    """Expire a locked PENDING session inside the caller's transaction.

    Zeroes reserved points and burns unused tokens. A linked SUBMITTED order
    with no payment attempts at all is cancelled here; orders with a pending
    attempt are left for the gateway TTL pass or for an operator.
    """
    outcome = SessionExpiry(released_points=session.points_reserved)

    result = await db.execute(
        select(Order.id).where(Order.checkout_session_id == session.id)
    )
    order_id = result.scalar_one_or_none()
    if order_id is not None:
        order = await lock_order(db, order_id)
        if order is not None and order.status == OrderStatus.SUBMITTED and not order.payments:
            cancellation = await cancel_order_locked(
                db, order, reason="checkout session expired"
            )
            outcome.cancelled_order_id = order.id
            outcome.released_points += cancellation.released_points
            outcome.released_seats = cancellation.released_seats

    session.status = CheckoutSessionStatus.EXPIRED
    session.points_reserved = 0

    tokens = await db.execute(
        update(MagicLinkToken)
        .where(
            MagicLinkToken.session_id == session.id,
            MagicLinkToken.used_at.is_(None),
        )
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    outcome.expired_tokens = tokens.rowcount or 0
    return outcome


async def expire_session_if_stale(
    db: AsyncSession,
    session_id: uuid.UUID,
    *,
    now: Optional[datetime] = None,
) -> Optional[CheckoutSession]:
    """Load a session, expiring it first when it is PENDING past its TTL.

    Returns ``None`` when the session does not exist.
    """
    now = now or utc_now()
    session = await _select_session(db, session_id, for_update=False)
    if session is None:
        return None
    if session.status != CheckoutSessionStatus.PENDING or not is_expired(session, now):
        return session

    session = await _select_session(db, session_id, for_update=True)
    if session.status == CheckoutSessionStatus.PENDING and is_expired(session, now):
        try:
            outcome = await apply_session_expiry(db, session, now=now)
        except Exception:
            await db.rollback()
            raise
        await db.commit()
        logger.info(
            "Expired checkout session %s on read (tokens=%d, cancelled_order=%s)",
            session.id,
            outcome.expired_tokens,
            outcome.cancelled_order_id,
        )
    else:
        await db.commit()
    return session


# ---------------------------------------------------------------------------
# Sweeper passes
# ---------------------------------------------------------------------------


async def expire_stale_sessions(
    db: AsyncSession, result: SweepResult, *, now: datetime
) -> None:
    """Pass 1: PENDING sessions past expiry, one transaction per session."""
    rows = await db.execute(
        select(CheckoutSession.id)
        .where(
            CheckoutSession.status == CheckoutSessionStatus.PENDING,
            CheckoutSession.expires_at <= now,
        )
        .order_by(CheckoutSession.expires_at.asc())
        .limit(SWEEP_BATCH_SIZE)
    )
    session_ids = list(rows.scalars().all())

    for session_id in session_ids:
        try:
            session = await _select_session(db, session_id, for_update=True)
            if (
                session is None
                or session.status != CheckoutSessionStatus.PENDING
                or not is_expired(session, now)
            ):
                await db.commit()
                continue
            outcome = await apply_session_expiry(db, session, now=now)
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Failed to expire checkout session %s", session_id)
            continue

        result.expired_sessions += 1
        result.expired_tokens += outcome.expired_tokens
        result.released_points += outcome.released_points
        result.released_seats += outcome.released_seats


async def expire_orphan_tokens(
    db: AsyncSession, result: SweepResult, *, now: datetime
) -> None:
    """Pass 2: unused, expired tokens whose session already left PENDING."""
    try:
        tokens = await db.execute(
            update(MagicLinkToken)
            .where(
                MagicLinkToken.used_at.is_(None),
                MagicLinkToken.expires_at < now,
                MagicLinkToken.session_id.in_(
                    select(CheckoutSession.id).where(
                        CheckoutSession.status != CheckoutSessionStatus.PENDING
                    )
                ),
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Failed to sweep orphan magic-link tokens")
        return

    result.expired_tokens += tokens.rowcount or 0


def _latest_gateway_attempt(order: Order) -> Optional[Payment]:
    attempts = [p for p in order.payments if p.provider == PaymentProvider.GATEWAY]
    if not attempts:
        return None
    return max(attempts, key=lambda p: p.created_at)


def _gateway_reservation_lapsed(order: Order, cutoff: datetime) -> bool:
    if any(p.provider == PaymentProvider.MANUAL_TRANSFER for p in order.payments):
        return False
    if any(p.status == PaymentStatus.PAID for p in order.payments):
        return False
    latest = _latest_gateway_attempt(order)
    return latest is not None and ensure_aware(latest.created_at) <= cutoff


async def cancel_stale_gateway_orders(
    db: AsyncSession, result: SweepResult, *, now: datetime
) -> None:
    """Pass 3: SUBMITTED gateway orders whose latest attempt outlived the TTL.

    The TTL is measured from the most recent attempt, so a retry extends the
    reservation. Orders with any manual-transfer attempt are never touched.
    """
    ttl = timedelta(minutes=get_settings().GATEWAY_RESERVATION_TTL_MINUTES)
    cutoff = now - ttl

    rows = await db.execute(
        select(Order.id)
        .where(
            Order.status == OrderStatus.SUBMITTED,
            Order.payments.any(Payment.provider == PaymentProvider.GATEWAY),
            ~Order.payments.any(Payment.provider == PaymentProvider.MANUAL_TRANSFER),
            ~Order.payments.any(Payment.status == PaymentStatus.PAID),
        )
        .order_by(Order.created_at.asc())
        .limit(SWEEP_BATCH_SIZE)
    )
    order_ids = list(rows.scalars().all())

    for order_id in order_ids:
        try:
            order = await lock_order(db, order_id)
            if (
                order is None
                or order.status != OrderStatus.SUBMITTED
                or not _gateway_reservation_lapsed(order, cutoff)
            ):
                await db.commit()
                continue
            cancellation = await cancel_order_locked(
                db, order, reason="gateway payment window elapsed"
            )
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("Failed to cancel stale gateway order %s", order_id)
            continue

        result.expired_gateway_orders += 1
        result.released_seats += cancellation.released_seats
        result.released_points += cancellation.released_points


async def run_sweep(db: AsyncSession, *, now: Optional[datetime] = None) -> SweepResult:
    """Run all three expiry passes once and return the counts."""
    now = now or utc_now()
    result = SweepResult()

    await expire_stale_sessions(db, result, now=now)
    await expire_orphan_tokens(db, result, now=now)
    await cancel_stale_gateway_orders(db, result, now=now)

    logger.info(
        "Expiry sweep finished",
        extra={"extra_fields": result.as_dict()},
    )
    return result
