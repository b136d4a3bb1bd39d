"""Seed helpers shared by unit and integration tests."""

from datetime import timedelta

from libs.common.datetime_utils import utc_now
from services.reservations_service.models import LoyaltyTxnType
from tests.factories import (
    CheckoutSessionFactory,
    CustomerFactory,
    LoyaltyAccountFactory,
    LoyaltyTransactionFactory,
    TripFactory,
)


async def seed_trip(db, **overrides):
    trip = TripFactory.create(**overrides)
    db.add(trip)
    await db.commit()
    return trip


async def seed_customer_with_points(db, points=0, **overrides):
    """Customer + loyalty account, optionally holding a single valid EARN."""
    customer = CustomerFactory.create(**overrides)
    db.add(customer)
    await db.flush()
    account = LoyaltyAccountFactory.create(customer_id=customer.id, points_balance=points)
    db.add(account)
    await db.flush()
    if points > 0:
        db.add(
            LoyaltyTransactionFactory.create(
                account_id=account.id,
                type=LoyaltyTxnType.EARN,
                points=points,
                expires_at=utc_now() + timedelta(days=365),
            )
        )
    await db.commit()
    return customer, account


def cart_line(trip, qty=1, **extra):
    return {"trip_id": str(trip.id), "qty": qty, **extra}


async def seed_session(db, *, email, cart, **overrides):
    session = CheckoutSessionFactory.create(
        customer_email=email.lower(), cart_snapshot=cart, **overrides
    )
    db.add(session)
    await db.commit()
    return session


def passengers(count, document_type="id_card"):
    numbers = {"id_card": "ABC{:06d}", "passport": "AB{:07d}"}
    return [
        {
            "first_name": f"Jan{i}",
            "last_name": "Kowalski",
            "birth_date": "1990-05-17",
            "document_type": document_type,
            "document_number": numbers[document_type].format(100000 + i),
        }
        for i in range(count)
    ]


def order_payload(session, items, *, email=None, use_points=False, invoice=None):
    """Request body for POST /api/orders; ``items`` is [(trip, qty), ...]."""
    body = {
        "checkout_session_id": str(session.id),
        "customer": {
            "name": "Jan Kowalski",
            "email": email or session.customer_email,
            "phone": "+48600100200",
        },
        "items": [
            {"trip_id": str(trip.id), "qty": qty, "passengers": passengers(qty)}
            for trip, qty in items
        ],
        "use_points": use_points,
    }
    if invoice is not None:
        body["invoice"] = invoice
    return body


async def place_order(
    db,
    *,
    price_cents=10000,
    qty=1,
    capacity=20,
    points=0,
    reserve=0,
    email_client=None,
):
    """Run the real order flow: trip, customer, verified session, order.

    Returns ``(order, trip, account)``. ``reserve`` points are reserved on the
    session and used when positive.
    """
    from services.reservations_service.schemas import CreateOrderRequest
    from services.reservations_service.services.orders import create_order

    trip = await seed_trip(db, price_cents=price_cents, capacity=capacity)
    customer, account = await seed_customer_with_points(db, points=points)
    session = await seed_session(
        db,
        email=customer.email,
        cart=[cart_line(trip, qty)],
        bound_customer_id=customer.id if points else None,
        points_reserved=reserve,
    )
    request = CreateOrderRequest.model_validate(
        order_payload(session, [(trip, qty)], use_points=reserve > 0)
    )
    order = await create_order(db, request=request, email_client=email_client)
    return order, trip, account
