"""Unit tests for settlement (mark_paid) and cancellation."""

import asyncio
from datetime import timedelta

import pytest
from fastapi import HTTPException
from libs.common.datetime_utils import ensure_aware, utc_now
from services.reservations_service.models import (
    CheckoutSession,
    CheckoutSessionStatus,
    LoyaltyTransaction,
    LoyaltyTxnType,
    OrderStatus,
    PaymentProvider,
    PaymentStatus,
)
from services.reservations_service.services.loyalty import available_points
from services.reservations_service.services.settlement import (
    cancel_manual_transfer_order,
    cancel_order,
    mark_manual_transfer_paid,
    mark_paid,
)
from sqlalchemy import select
from tests.factories import PaymentFactory
from tests.helpers import place_order


async def _add_payment(db, order, **overrides):
    overrides.setdefault("amount_cents", order.total_cents)
    payment = PaymentFactory.create(order_id=order.id, **overrides)
    db.add(payment)
    await db.commit()
    await db.refresh(order, attribute_names=["payments"])
    return payment


async def _earn_rows(db, order):
    result = await db.execute(
        select(LoyaltyTransaction).where(
            LoyaltyTransaction.order_id == order.id,
            LoyaltyTransaction.type == LoyaltyTxnType.EARN,
        )
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# mark_paid
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_paid_confirms_and_earns_ten_percent(db_session):
    """An 80.00 order earns 8 points, valid for a year."""
    order, _, account = await place_order(db_session, points=50, reserve=20)
    gateway = await _add_payment(
        db_session,
        order,
        provider=PaymentProvider.GATEWAY,
        created_at=utc_now() - timedelta(minutes=5),
    )
    transfer = await _add_payment(db_session, order)

    result = await mark_paid(
        db_session, order_id=order.id, provider=PaymentProvider.GATEWAY
    )

    assert result.was_already_paid is False
    assert result.payment.id == gateway.id
    assert result.points_earned == 8
    assert result.order.status == OrderStatus.CONFIRMED

    await db_session.refresh(gateway)
    await db_session.refresh(transfer)
    assert gateway.status == PaymentStatus.PAID
    assert gateway.paid_at is not None
    assert transfer.status == PaymentStatus.CANCELLED

    (grant,) = await _earn_rows(db_session, order)
    assert grant.points == 8
    assert ensure_aware(grant.expires_at) > utc_now() + timedelta(days=360)
    assert await available_points(db_session, account.id) == 38


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_paid_is_idempotent(db_session):
    order, _, _ = await place_order(db_session)
    await _add_payment(db_session, order, provider=PaymentProvider.GATEWAY)

    first = await mark_paid(db_session, order_id=order.id)
    second = await mark_paid(db_session, order_id=order.id)

    assert first.was_already_paid is False
    assert second.was_already_paid is True
    assert second.payment.id == first.payment.id
    assert len(await _earn_rows(db_session, order)) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_paid_creates_attempt_for_provider(db_session):
    order, _, _ = await place_order(db_session)

    result = await mark_paid(
        db_session,
        order_id=order.id,
        provider=PaymentProvider.MANUAL_TRANSFER,
        provider_payload={"marked_by": "ops"},
    )

    assert result.payment.provider == PaymentProvider.MANUAL_TRANSFER
    assert result.payment.status == PaymentStatus.PAID
    assert result.payment.amount_cents == order.total_cents
    assert result.payment.payment_metadata["settlement"] == {"marked_by": "ops"}


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_paid_without_any_attempt_conflicts(db_session):
    order, _, _ = await place_order(db_session)

    with pytest.raises(HTTPException) as exc_info:
        await mark_paid(db_session, order_id=order.id)

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_paid_on_cancelled_order_conflicts(db_session):
    order, _, _ = await place_order(db_session)
    await _add_payment(db_session, order)
    await cancel_order(db_session, order_id=order.id, reason="test")

    with pytest.raises(HTTPException) as exc_info:
        await mark_paid(db_session, order_id=order.id)

    assert exc_info.value.status_code == 409
    assert exc_info.value.detail == "Order is cancelled"


# ---------------------------------------------------------------------------
# cancel_order
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_releases_seats_and_refunds_points(db_session):
    order, trip, account = await place_order(db_session, qty=2, points=50, reserve=20)
    payment = await _add_payment(db_session, order, provider=PaymentProvider.GATEWAY)
    assert await available_points(db_session, account.id) == 30

    result = await cancel_order(db_session, order_id=order.id, reason="customer request")

    assert result.already_cancelled is False
    assert result.released_seats == 2
    assert result.released_points == 20
    assert await available_points(db_session, account.id) == 50

    await db_session.refresh(trip)
    await db_session.refresh(payment)
    session = await db_session.get(CheckoutSession, order.checkout_session_id)
    await db_session.refresh(session)
    assert trip.seats_left == 20
    assert payment.status == PaymentStatus.CANCELLED
    assert session.status == CheckoutSessionStatus.CANCELLED
    assert session.points_reserved == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_cancel_twice_releases_once(db_session):
    order, trip, account = await place_order(db_session, points=50, reserve=20)

    await cancel_order(db_session, order_id=order.id, reason="first")
    again = await cancel_order(db_session, order_id=order.id, reason="second")

    assert again.already_cancelled is True
    assert again.released_seats == 0
    await db_session.refresh(trip)
    assert trip.seats_left == 20
    assert await available_points(db_session, account.id) == 50


@pytest.mark.asyncio
@pytest.mark.unit
async def test_paid_order_cannot_be_cancelled(db_session):
    order, trip, _ = await place_order(db_session)
    await _add_payment(db_session, order)
    await mark_paid(db_session, order_id=order.id)

    with pytest.raises(HTTPException) as exc_info:
        await cancel_order(db_session, order_id=order.id, reason="too late")

    assert exc_info.value.status_code == 409
    await db_session.refresh(trip)
    assert trip.seats_left == 19


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transfer_cancellation_only_for_transfer_orders(db_session):
    gateway_order, gateway_trip, _ = await place_order(db_session)
    await _add_payment(db_session, gateway_order, provider=PaymentProvider.GATEWAY)
    gateway_order_id = gateway_order.id
    transfer_order, _, _ = await place_order(db_session)
    await _add_payment(db_session, transfer_order)
    transfer_order_id = transfer_order.id

    with pytest.raises(HTTPException) as exc_info:
        await cancel_manual_transfer_order(
            db_session, order_id=gateway_order_id, reason="operator"
        )
    result = await cancel_manual_transfer_order(
        db_session, order_id=transfer_order_id, reason="operator"
    )

    assert exc_info.value.status_code == 400
    assert result.order.status == OrderStatus.CANCELLED
    assert result.released_seats == 1
    await db_session.refresh(gateway_order)
    await db_session.refresh(gateway_trip)
    assert gateway_order.status == OrderStatus.SUBMITTED
    assert gateway_trip.seats_left == 19


# ---------------------------------------------------------------------------
# mark_manual_transfer_paid
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_manual_transfer_marked_paid_once(db_session):
    order, _, _ = await place_order(db_session)
    transfer = await _add_payment(db_session, order)

    first = await mark_manual_transfer_paid(
        db_session, order_id=order.id, marked_by="ops@test.com"
    )
    second = await mark_manual_transfer_paid(db_session, order_id=order.id)

    assert first.was_already_paid is False
    assert first.payment.id == transfer.id
    assert first.payment.payment_metadata["settlement"] == {"marked_by": "ops@test.com"}
    assert second.was_already_paid is True


@pytest.mark.asyncio
@pytest.mark.unit
async def test_manual_transfer_on_gateway_paid_order_conflicts(db_session):
    order, _, _ = await place_order(db_session)
    await _add_payment(db_session, order, provider=PaymentProvider.GATEWAY)
    await _add_payment(db_session, order)
    await mark_paid(db_session, order_id=order.id, provider=PaymentProvider.GATEWAY)

    with pytest.raises(HTTPException) as exc_info:
        await mark_manual_transfer_paid(db_session, order_id=order.id)

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
@pytest.mark.unit
async def test_manual_transfer_requires_transfer_attempt(db_session):
    order, _, _ = await place_order(db_session)
    gateway = await _add_payment(db_session, order, provider=PaymentProvider.GATEWAY)
    gateway_id = gateway.id

    with pytest.raises(HTTPException) as no_transfer:
        await mark_manual_transfer_paid(db_session, order_id=order.id)

    await db_session.refresh(order)
    await _add_payment(db_session, order)
    with pytest.raises(HTTPException) as foreign_payment:
        await mark_manual_transfer_paid(
            db_session, order_id=order.id, payment_id=gateway_id
        )

    assert no_transfer.value.status_code == 400
    assert foreign_payment.value.status_code == 400


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_concurrent_settlement_earns_once(session_factory):
    """Three simultaneous confirmations: one settles, the others see it paid."""
    async with session_factory() as setup:
        order, _, _ = await place_order(setup, points=50, reserve=20)
        await _add_payment(setup, order, provider=PaymentProvider.GATEWAY)

    async def settle():
        async with session_factory() as db:
            result = await mark_paid(db, order_id=order.id)
            return result.was_already_paid

    results = await asyncio.gather(*(settle() for _ in range(3)))

    assert sorted(results) == [False, True, True]
    async with session_factory() as check:
        assert [row.points for row in await _earn_rows(check, order)] == [8]
