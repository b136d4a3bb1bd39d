"""Unit tests for order finalization and customer order lookup."""

import asyncio
from datetime import timedelta

import pytest
from fastapi import HTTPException
from libs.common.datetime_utils import utc_now
from services.reservations_service.models import (
    CheckoutSession,
    CheckoutSessionStatus,
    LoyaltyTransaction,
    LoyaltyTxnType,
    OrderStatus,
    PaymentProvider,
    Trip,
    TripAvailability,
)
from services.reservations_service.schemas import CreateOrderRequest
from services.reservations_service.services import orders as orders_service
from services.reservations_service.services.inventory import claim_seats
from services.reservations_service.services.loyalty import available_points
from services.reservations_service.services.orders import create_order, lookup_order
from sqlalchemy import select
from tests.factories import PaymentFactory
from tests.fakes import FakeEmailClient
from tests.helpers import (
    cart_line,
    order_payload,
    place_order,
    seed_customer_with_points,
    seed_session,
    seed_trip,
)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_order_with_points_applies_discount_and_spends(db_session):
    """100.00 cart, 50 points held, 20 reserved: 80.00 to pay."""
    email_client = FakeEmailClient()
    order, trip, account = await place_order(
        db_session, price_cents=10000, points=50, reserve=20, email_client=email_client
    )

    assert order.status == OrderStatus.SUBMITTED
    assert order.order_number.startswith(f"DTS-{utc_now().year}-")
    assert order.subtotal_cents == 10000
    assert order.points_used == 20
    assert order.discount_cents == 2000
    assert order.total_cents == 8000
    assert len(order.items) == 1
    assert order.items[0].unit_price_cents == 10000
    assert len(order.items[0].passengers) == 1

    spends = await db_session.execute(
        select(LoyaltyTransaction).where(
            LoyaltyTransaction.order_id == order.id,
            LoyaltyTransaction.type == LoyaltyTxnType.SPEND,
        )
    )
    spend_row = spends.scalar_one()
    assert spend_row.points == -20
    assert await available_points(db_session, account.id) == 30

    session = await db_session.get(CheckoutSession, order.checkout_session_id)
    await db_session.refresh(session)
    assert session.status == CheckoutSessionStatus.PAID
    assert session.points_reserved == 20

    await db_session.refresh(trip)
    assert trip.seats_left == 19

    confirmations = email_client.of_type("order_confirmation")
    assert len(confirmations) == 1
    assert confirmations[0]["data"]["total_cents"] == 8000
    assert confirmations[0]["data"]["points_used"] == 20


@pytest.mark.asyncio
@pytest.mark.unit
async def test_order_without_points_creates_customer_and_account(db_session):
    order, trip, account = await place_order(db_session, price_cents=7500, qty=2)

    assert order.total_cents == 15000
    assert order.points_used == 0
    assert order.discount_cents == 0
    assert order.customer_id == account.customer_id
    await db_session.refresh(trip)
    assert trip.seats_left == 18


@pytest.mark.asyncio
@pytest.mark.unit
async def test_use_points_is_ignored_on_unverified_session(db_session):
    trip = await seed_trip(db_session, price_cents=10000)
    customer, account = await seed_customer_with_points(db_session, points=50)
    session = await seed_session(
        db_session, email=customer.email, cart=[cart_line(trip)], points_reserved=20
    )
    request = CreateOrderRequest.model_validate(
        order_payload(session, [(trip, 1)], use_points=True)
    )

    order = await create_order(db_session, request=request)

    assert order.points_used == 0
    assert order.total_cents == 10000
    assert await available_points(db_session, account.id) == 50


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_passenger_count_must_match_quantity(db_session):
    trip = await seed_trip(db_session)
    session = await seed_session(db_session, email="buyer@test.com", cart=[cart_line(trip, 2)])
    payload = order_payload(session, [(trip, 2)])
    payload["items"][0]["passengers"] = payload["items"][0]["passengers"][:1]
    request = CreateOrderRequest.model_validate(payload)

    with pytest.raises(HTTPException) as exc_info:
        await create_order(db_session, request=request)

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["passengers_count"] == 1
    assert exc_info.value.detail["qty"] == 2


@pytest.mark.asyncio
@pytest.mark.unit
async def test_items_must_match_cart(db_session):
    trip = await seed_trip(db_session)
    session = await seed_session(db_session, email="buyer@test.com", cart=[cart_line(trip, 1)])
    request = CreateOrderRequest.model_validate(order_payload(session, [(trip, 2)]))

    with pytest.raises(HTTPException) as exc_info:
        await create_order(db_session, request=request)

    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["message"] == "Order items do not match the checkout cart"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_oversell_rejects_whole_order(db_session):
    """A short line fails the order and leaves every trip untouched."""
    plenty = await seed_trip(db_session, capacity=10, name="Plenty")
    scarce = await seed_trip(db_session, capacity=1, name="Scarce")
    session = await seed_session(
        db_session,
        email="buyer@test.com",
        cart=[cart_line(plenty, 2), cart_line(scarce, 2)],
    )
    request = CreateOrderRequest.model_validate(
        order_payload(session, [(plenty, 2), (scarce, 2)])
    )
    scarce_id = scarce.id

    with pytest.raises(HTTPException) as exc_info:
        await create_order(db_session, request=request)

    assert exc_info.value.status_code == 422
    detail = exc_info.value.detail
    assert detail["trip_id"] == str(scarce_id)
    assert detail["requested_qty"] == 2
    assert detail["available_seats"] == 1
    assert detail["message"] == "Only 1 seats left for Scarce"

    await db_session.refresh(plenty)
    await db_session.refresh(scarce)
    await db_session.refresh(session)
    assert plenty.seats_left == 10
    assert scarce.seats_left == 1
    assert session.status == CheckoutSessionStatus.PENDING


@pytest.mark.asyncio
@pytest.mark.unit
async def test_expired_session_is_expired_and_rejected(db_session):
    trip = await seed_trip(db_session)
    session = await seed_session(
        db_session,
        email="buyer@test.com",
        cart=[cart_line(trip)],
        expires_at=utc_now() - timedelta(seconds=5),
    )
    request = CreateOrderRequest.model_validate(order_payload(session, [(trip, 1)]))

    with pytest.raises(HTTPException) as exc_info:
        await create_order(db_session, request=request)

    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["status"] == "expired"
    await db_session.refresh(session)
    assert session.status == CheckoutSessionStatus.EXPIRED


@pytest.mark.asyncio
@pytest.mark.unit
async def test_session_can_only_be_ordered_once(db_session):
    trip = await seed_trip(db_session)
    session = await seed_session(db_session, email="buyer@test.com", cart=[cart_line(trip)])
    request = CreateOrderRequest.model_validate(order_payload(session, [(trip, 1)]))
    await create_order(db_session, request=request)

    with pytest.raises(HTTPException) as exc_info:
        await create_order(db_session, request=request)

    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["status"] == "paid"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_customer_email_must_match_session(db_session):
    trip = await seed_trip(db_session)
    session = await seed_session(db_session, email="buyer@test.com", cart=[cart_line(trip)])
    request = CreateOrderRequest.model_validate(
        order_payload(session, [(trip, 1)], email="someone.else@test.com")
    )

    with pytest.raises(HTTPException) as exc_info:
        await create_order(db_session, request=request)

    assert exc_info.value.status_code == 400


# ---------------------------------------------------------------------------
# lookup_order
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_lookup_by_number_and_email(db_session):
    order, _, _ = await place_order(db_session)

    found, payment, instructions = await lookup_order(
        db_session,
        order_number=order.order_number.lower(),
        email=order.customer_email.upper(),
    )

    assert found.id == order.id
    assert payment is None
    assert instructions is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_lookup_with_wrong_email_looks_like_unknown_order(db_session):
    order, _, _ = await place_order(db_session)

    with pytest.raises(HTTPException) as wrong_email:
        await lookup_order(db_session, order_number=order.order_number, email="x@test.com")
    with pytest.raises(HTTPException) as unknown:
        await lookup_order(
            db_session, order_number="DTS-2000-000000", email=order.customer_email
        )

    assert wrong_email.value.status_code == unknown.value.status_code == 404
    assert wrong_email.value.detail == unknown.value.detail


@pytest.mark.asyncio
@pytest.mark.unit
async def test_lookup_returns_transfer_instructions(db_session):
    order, _, _ = await place_order(db_session, price_cents=12300)
    db_session.add(
        PaymentFactory.create(
            order_id=order.id,
            provider=PaymentProvider.MANUAL_TRANSFER,
            amount_cents=order.total_cents,
        )
    )
    await db_session.commit()
    await db_session.refresh(order, attribute_names=["payments"])

    _, payment, instructions = await lookup_order(
        db_session, order_number=order.order_number, email=order.customer_email
    )

    assert payment.provider == PaymentProvider.MANUAL_TRANSFER
    assert instructions.transfer_title == order.order_number
    assert instructions.amount_cents == 12300


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


async def _checkout_request(session_factory, email, lines):
    """Commit a session holding ``lines`` ([(trip, qty), ...]) and build its order body."""
    async with session_factory() as setup:
        session = await seed_session(
            setup, email=email, cart=[cart_line(trip, qty) for trip, qty in lines]
        )
    return CreateOrderRequest.model_validate(order_payload(session, lines))


async def _submit(session_factory, request):
    """Order number on success, the HTTP status code on rejection."""
    async with session_factory() as db:
        try:
            order = await create_order(db, request=request)
        except HTTPException as exc:
            return exc.status_code
        return order.order_number


@pytest.mark.asyncio
@pytest.mark.unit
async def test_opposite_cart_order_does_not_deadlock(session_factory, monkeypatch):
    """Carts holding the same two trips in opposite order both go through."""
    async with session_factory() as setup:
        lisbon = await seed_trip(setup, capacity=10, name="Lisbon")
        porto = await seed_trip(setup, capacity=10, name="Porto")
    forward = await _checkout_request(
        session_factory, "forward@test.com", [(lisbon, 1), (porto, 1)]
    )
    backward = await _checkout_request(
        session_factory, "backward@test.com", [(porto, 1), (lisbon, 1)]
    )

    # Hold each claimed row long enough for the other order to interleave.
    async def slow_claim(db, *, trip_id, qty):
        claim = await claim_seats(db, trip_id=trip_id, qty=qty)
        await asyncio.sleep(0.2)
        return claim

    monkeypatch.setattr(orders_service, "claim_seats", slow_claim)

    results = await asyncio.gather(
        _submit(session_factory, forward), _submit(session_factory, backward)
    )

    assert all(str(r).startswith("DTS-") for r in results)
    async with session_factory() as check:
        for trip in (lisbon, porto):
            stored = await check.get(Trip, trip.id)
            assert stored.seats_left == 8


@pytest.mark.asyncio
@pytest.mark.unit
async def test_race_for_last_seats_has_one_winner(session_factory):
    """Two seats left, two concurrent orders of two: one order, one 422."""
    async with session_factory() as setup:
        trip = await seed_trip(setup, capacity=2, name="Last Call")
    requests = [
        await _checkout_request(session_factory, f"racer{i}@test.com", [(trip, 2)])
        for i in range(2)
    ]

    results = await asyncio.gather(*(_submit(session_factory, r) for r in requests))

    assert [r for r in results if r == 422] == [422]
    assert len([r for r in results if str(r).startswith("DTS-")]) == 1
    async with session_factory() as check:
        stored = await check.get(Trip, trip.id)
        assert stored.seats_left == 0
        assert stored.availability == TripAvailability.CLOSED
