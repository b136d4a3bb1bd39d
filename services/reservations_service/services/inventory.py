"""Seat inventory: atomic conditional claims and releases on trip counters.

These are the only functions allowed to write ``Trip.seats_left`` and
``Trip.availability``. Both run inside the caller's transaction and never
commit; the caller owns the unit of work.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from libs.common.logging import get_logger
from services.reservations_service.models import Trip, TripAvailability
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass
class SeatClaim:
    trip_id: uuid.UUID
    claimed: bool
    seats_left: int


async def claim_seats(db: AsyncSession, *, trip_id: uuid.UUID, qty: int) -> SeatClaim:
    """Decrement ``seats_left`` by ``qty`` if the trip is OPEN and has room.

    The guard lives in the WHERE clause of a single UPDATE, so concurrent
    claims serialize on the row lock and the loser sees zero affected rows.
    ``seats_left`` in the result is the post-claim count on success and the
    current count on failure.
    """
    if qty <= 0:
        raise ValueError("qty must be positive")

    result = await db.execute(
        update(Trip)
        .where(
            Trip.id == trip_id,
            Trip.availability == TripAvailability.OPEN,
            Trip.seats_left >= qty,
        )
        .values(seats_left=Trip.seats_left - qty)
        .returning(Trip.seats_left)
        .execution_options(synchronize_session="fetch")
    )
    new_seats_left: Optional[int] = result.scalar_one_or_none()

    if new_seats_left is None:
        current = await db.execute(select(Trip.seats_left).where(Trip.id == trip_id))
        seats_left = current.scalar_one_or_none() or 0
        logger.info(
            "Seat claim rejected for trip %s (requested=%d, seats_left=%d)",
            trip_id,
            qty,
            seats_left,
        )
        return SeatClaim(trip_id=trip_id, claimed=False, seats_left=seats_left)

    if new_seats_left == 0:
        # Row is already locked by the UPDATE above.
        await db.execute(
            update(Trip)
            .where(Trip.id == trip_id, Trip.seats_left == 0)
            .values(availability=TripAvailability.CLOSED)
            .execution_options(synchronize_session="fetch")
        )

    return SeatClaim(trip_id=trip_id, claimed=True, seats_left=new_seats_left)


async def release_seats(db: AsyncSession, *, trip_id: uuid.UUID, qty: int) -> int:
    """Give ``qty`` seats back to a trip, clamped at capacity.

    A trip that was CLOSED only because it sold out is reopened; an operator
    closure (``manually_closed``) is left alone. Returns the new seats_left,
    or -1 when the trip no longer exists.
    """
    if qty <= 0:
        return -1

    result = await db.execute(
        update(Trip)
        .where(Trip.id == trip_id)
        .values(seats_left=func.least(Trip.capacity, Trip.seats_left + qty))
        .returning(Trip.seats_left, Trip.availability, Trip.manually_closed)
        .execution_options(synchronize_session="fetch")
    )
    row = result.first()
    if row is None:
        logger.warning("Seat release skipped: trip %s not found", trip_id)
        return -1

    seats_left, availability, manually_closed = row
    next_availability = availability
    if seats_left == 0:
        next_availability = TripAvailability.CLOSED
    elif availability == TripAvailability.CLOSED and not manually_closed:
        next_availability = TripAvailability.OPEN

    if next_availability != availability:
        await db.execute(
            update(Trip)
            .where(Trip.id == trip_id)
            .values(availability=next_availability)
            .execution_options(synchronize_session="fetch")
        )

    return seats_left
