"""Unit tests for atomic seat claims and releases."""

import asyncio
import uuid

import pytest
from services.reservations_service.models import Trip, TripAvailability
from services.reservations_service.services.inventory import claim_seats, release_seats
from tests.factories import TripFactory
from tests.helpers import seed_trip


# ---------------------------------------------------------------------------
# claim_seats
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_claim_decrements_seats(db_session):
    trip = await seed_trip(db_session, capacity=10)

    claim = await claim_seats(db_session, trip_id=trip.id, qty=3)
    await db_session.commit()
    await db_session.refresh(trip)

    assert claim.claimed is True
    assert claim.seats_left == 7
    assert trip.seats_left == 7
    assert trip.availability == TripAvailability.OPEN


@pytest.mark.asyncio
@pytest.mark.unit
async def test_claiming_last_seats_closes_trip(db_session):
    trip = await seed_trip(db_session, capacity=2)

    claim = await claim_seats(db_session, trip_id=trip.id, qty=2)
    await db_session.commit()
    await db_session.refresh(trip)

    assert claim.claimed is True
    assert trip.seats_left == 0
    assert trip.availability == TripAvailability.CLOSED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_claim_rejected_when_not_enough_seats(db_session):
    trip = await seed_trip(db_session, capacity=2)

    claim = await claim_seats(db_session, trip_id=trip.id, qty=3)
    await db_session.refresh(trip)

    assert claim.claimed is False
    assert claim.seats_left == 2
    assert trip.seats_left == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_claim_rejected_when_trip_not_open(db_session):
    trip = await seed_trip(db_session, capacity=5, availability=TripAvailability.WAITLIST)

    claim = await claim_seats(db_session, trip_id=trip.id, qty=1)

    assert claim.claimed is False
    assert claim.seats_left == 5


@pytest.mark.asyncio
@pytest.mark.unit
async def test_claim_unknown_trip(db_session):
    claim = await claim_seats(db_session, trip_id=uuid.uuid4(), qty=1)
    assert claim.claimed is False
    assert claim.seats_left == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_concurrent_claims_never_oversell(session_factory):
    """Five buyers race for three seats from separate connections."""
    async with session_factory() as setup:
        trip = TripFactory.create(capacity=3)
        setup.add(trip)
        await setup.commit()

    async def attempt():
        async with session_factory() as db:
            claim = await claim_seats(db, trip_id=trip.id, qty=1)
            await db.commit()
            return claim.claimed

    results = await asyncio.gather(*(attempt() for _ in range(5)))

    async with session_factory() as check:
        stored = await check.get(Trip, trip.id)
        assert sum(results) == 3
        assert stored.seats_left == 0
        assert stored.availability == TripAvailability.CLOSED


# ---------------------------------------------------------------------------
# release_seats
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_release_is_clamped_at_capacity(db_session):
    trip = await seed_trip(db_session, capacity=4, seats_left=3)

    seats_left = await release_seats(db_session, trip_id=trip.id, qty=5)
    await db_session.commit()

    assert seats_left == 4


@pytest.mark.asyncio
@pytest.mark.unit
async def test_release_reopens_sold_out_trip(db_session):
    trip = await seed_trip(
        db_session, capacity=2, seats_left=0, availability=TripAvailability.CLOSED
    )

    await release_seats(db_session, trip_id=trip.id, qty=1)
    await db_session.commit()
    await db_session.refresh(trip)

    assert trip.seats_left == 1
    assert trip.availability == TripAvailability.OPEN


@pytest.mark.asyncio
@pytest.mark.unit
async def test_release_keeps_operator_closure(db_session):
    trip = await seed_trip(
        db_session,
        capacity=2,
        seats_left=0,
        availability=TripAvailability.CLOSED,
        manually_closed=True,
    )

    await release_seats(db_session, trip_id=trip.id, qty=2)
    await db_session.commit()
    await db_session.refresh(trip)

    assert trip.seats_left == 2
    assert trip.availability == TripAvailability.CLOSED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_release_unknown_trip_returns_sentinel(db_session):
    assert await release_seats(db_session, trip_id=uuid.uuid4(), qty=1) == -1
