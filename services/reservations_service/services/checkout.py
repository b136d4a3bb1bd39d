"""Checkout session manager: cart snapshots, pricing and points reservation."""

import uuid
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import HTTPException, status
from libs.common.config import get_settings
from libs.common.datetime_utils import minutes_from_now
from libs.common.logging import get_logger
from services.reservations_service.models import (
    CheckoutSession,
    CheckoutSessionStatus,
    Trip,
)
from services.reservations_service.schemas.checkout import CartLine
from services.reservations_service.services.expiry import expire_session_if_stale
from services.reservations_service.services.loyalty import (
    available_points,
    clamp_points,
    get_account_for_customer,
    get_account_for_email,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass
class PricedLine:
    trip_id: uuid.UUID
    qty: int
    departure_point_id: Optional[uuid.UUID]
    unit_price_cents: int
    trip_name: str

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.qty


# ---------------------------------------------------------------------------
# Cart pricing
# ---------------------------------------------------------------------------


def serialize_cart(cart: list[CartLine]) -> list[dict[str, Any]]:
    return [line.model_dump(mode="json", exclude_none=True) for line in cart]


def resolve_unit_price(trip: Trip, line: CartLine) -> int:
    """Price one seat of a cart line.

    Order of precedence: a positive price snapshot taken when the item was
    added, the chosen departure point, the cheapest active departure point,
    then the trip's base price.
    """
    if line.unit_price_cents and line.unit_price_cents > 0:
        return line.unit_price_cents

    active_points = [dp for dp in trip.departure_points if dp.is_active]
    if line.departure_point_id:
        for dp in active_points:
            if dp.id == line.departure_point_id:
                return dp.price_cents

    if active_points:
        return min(dp.price_cents for dp in active_points)

    return trip.price_cents or 0


async def price_cart(db: AsyncSession, cart: list[dict[str, Any]]) -> list[PricedLine]:
    lines = [CartLine.model_validate(raw) for raw in cart]
    trip_ids = {line.trip_id for line in lines}
    result = await db.execute(select(Trip).where(Trip.id.in_(trip_ids)))
    trips = {trip.id: trip for trip in result.scalars().all()}

    priced: list[PricedLine] = []
    for line in lines:
        trip = trips.get(line.trip_id)
        if trip is None or not trip.is_active:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"message": "Trip is not available", "trip_id": str(line.trip_id)},
            )
        priced.append(
            PricedLine(
                trip_id=trip.id,
                qty=line.qty,
                departure_point_id=line.departure_point_id,
                unit_price_cents=resolve_unit_price(trip, line),
                trip_name=trip.name,
            )
        )
    return priced


async def cart_total_cents(db: AsyncSession, cart: list[dict[str, Any]]) -> int:
    return sum(line.line_total_cents for line in await price_cart(db, cart))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


async def create_session(
    db: AsyncSession,
    *,
    email: str,
    cart: list[CartLine],
) -> tuple[CheckoutSession, int]:
    """Create a PENDING session and preview the email's spendable points.

    The preview is lookup-only: the session is never bound to a customer
    here, so the response cannot be used to confirm account ownership.
    """
    settings = get_settings()
    email = email.strip().lower()
    snapshot = serialize_cart(cart)
    await price_cart(db, snapshot)

    session = CheckoutSession(
        customer_email=email,
        cart_snapshot=snapshot,
        points_reserved=0,
        status=CheckoutSessionStatus.PENDING,
        expires_at=minutes_from_now(settings.CHECKOUT_SESSION_TTL_MINUTES),
    )
    db.add(session)
    await db.flush()

    preview_points = 0
    account = await get_account_for_email(db, email)
    if account:
        preview_points = await available_points(db, account.id)

    await db.commit()
    await db.refresh(session)

    logger.info("Created checkout session %s (%d cart lines)", session.id, len(snapshot))
    return session, preview_points


async def get_session(db: AsyncSession, session_id: uuid.UUID) -> CheckoutSession:
    """Return a session after applying any due expiry transition."""
    session = await expire_session_if_stale(db, session_id)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Checkout session not found",
        )
    return session


async def _lock_pending_session(db: AsyncSession, session_id: uuid.UUID) -> CheckoutSession:
    await get_session(db, session_id)
    result = await db.execute(
        select(CheckoutSession)
        .where(CheckoutSession.id == session_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    session = result.scalar_one()
    if session.status != CheckoutSessionStatus.PENDING:
        session_status = session.status.value
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": "Checkout session is not pending",
                "status": session_status,
            },
        )
    return session


async def _spendable_points(db: AsyncSession, session: CheckoutSession) -> int:
    if session.bound_customer_id is None:
        return 0
    account = await get_account_for_customer(db, session.bound_customer_id)
    if account is None:
        return 0
    return await available_points(db, account.id)


async def update_cart(
    db: AsyncSession,
    session_id: uuid.UUID,
    cart: list[CartLine],
) -> CheckoutSession:
    """Replace the cart of a PENDING session and re-clamp reserved points."""
    session = await _lock_pending_session(db, session_id)
    snapshot = serialize_cart(cart)
    total = await cart_total_cents(db, snapshot)

    session.cart_snapshot = snapshot
    if session.points_reserved:
        available = await _spendable_points(db, session)
        session.points_reserved = clamp_points(session.points_reserved, available, total)

    await db.commit()
    await db.refresh(session)
    return session


async def apply_points(
    db: AsyncSession,
    session_id: uuid.UUID,
    requested_points: int,
) -> CheckoutSession:
    """Reserve points on a verified session, clamped to balance and the 20% cap."""
    session = await _lock_pending_session(db, session_id)
    if not session.is_verified:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Verify your email before using loyalty points",
        )

    total = await cart_total_cents(db, session.cart_snapshot)
    available = await _spendable_points(db, session)
    session.points_reserved = clamp_points(requested_points, available, total)

    await db.commit()
    await db.refresh(session)

    logger.info(
        "Reserved %d points on session %s (requested=%d, available=%d)",
        session.points_reserved,
        session.id,
        requested_points,
        available,
    )
    return session
