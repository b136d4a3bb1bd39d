"""Order finalization and customer order lookup."""

import uuid
from collections import Counter, defaultdict
from typing import Optional

from fastapi import HTTPException, status
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.emails.client import EmailClient
from libs.common.logging import get_logger
from services.reservations_service.models import (
    CheckoutSession,
    CheckoutSessionStatus,
    Customer,
    LoyaltyAccount,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
)
from services.reservations_service.schemas.orders import (
    CreateOrderRequest,
    ManualTransferInstructions,
)
from services.reservations_service.services.checkout import price_cart
from services.reservations_service.services.expiry import apply_session_expiry, is_expired
from services.reservations_service.services.inventory import claim_seats
from services.reservations_service.services.loyalty import (
    CENTS_PER_POINT,
    available_points,
    clamp_points,
    lock_account,
    spend,
)
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ORDER_NUMBER_ATTEMPTS = 10


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _generate_order_number(db: AsyncSession, year: int) -> str:
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = Order.generate_order_number(year)
        taken = await db.execute(select(Order.id).where(Order.order_number == candidate))
        if taken.scalar_one_or_none() is None:
            return candidate
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Could not allocate an order number, please retry",
    )


async def find_or_create_customer(
    db: AsyncSession, *, email: str, name: str, phone: str
) -> tuple[Customer, LoyaltyAccount]:
    """Return the customer for ``email`` and its loyalty account, creating both if needed."""
    await db.execute(
        pg_insert(Customer)
        .values(id=uuid.uuid4(), email=email, name=name, phone=phone, created_at=utc_now())
        .on_conflict_do_nothing(index_elements=[Customer.email])
    )
    result = await db.execute(select(Customer).where(Customer.email == email))
    customer = result.scalar_one()

    now = utc_now()
    await db.execute(
        pg_insert(LoyaltyAccount)
        .values(
            id=uuid.uuid4(),
            customer_id=customer.id,
            points_balance=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=[LoyaltyAccount.customer_id])
    )
    account_result = await db.execute(
        select(LoyaltyAccount).where(LoyaltyAccount.customer_id == customer.id)
    )
    return customer, account_result.scalar_one()


def _check_items_match_cart(request: CreateOrderRequest, cart: list[dict]) -> None:
    for item in request.items:
        if len(item.passengers) != item.qty:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "message": (
                        f"Passenger count ({len(item.passengers)}) does not match "
                        f"quantity ({item.qty})"
                    ),
                    "trip_id": str(item.trip_id),
                    "passengers_count": len(item.passengers),
                    "qty": item.qty,
                },
            )

    requested = Counter()
    for item in request.items:
        requested[str(item.trip_id)] += item.qty
    in_cart = Counter()
    for line in cart:
        in_cart[str(line["trip_id"])] += int(line["qty"])

    if requested != in_cart:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": "Order items do not match the checkout cart",
                "requested": dict(requested),
                "cart": dict(in_cart),
            },
        )


# ---------------------------------------------------------------------------
# Create order
# ---------------------------------------------------------------------------


async def create_order(
    db: AsyncSession,
    *,
    request: CreateOrderRequest,
    email_client: Optional[EmailClient] = None,
) -> Order:
    """Turn a PENDING checkout session into a SUBMITTED order.

    One transaction: seats are claimed for every cart line (all or nothing),
    the points discount is recomputed against the final cart and recorded as
    a SPEND, and the session is closed. Emails go out only after commit.
    """
    settings = get_settings()
    now = utc_now()

    result = await db.execute(
        select(CheckoutSession)
        .where(CheckoutSession.id == request.checkout_session_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    session = result.scalar_one_or_none()
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Checkout session not found"
        )

    if session.status == CheckoutSessionStatus.PENDING and is_expired(session, now):
        await apply_session_expiry(db, session, now=now)
        await db.commit()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "Checkout session expired", "status": "expired"},
        )
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

    email = request.customer.email.strip().lower()
    if email != session.customer_email:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email does not match the checkout session",
        )

    try:
        _check_items_match_cart(request, session.cart_snapshot)
        priced = await price_cart(db, session.cart_snapshot)
    except HTTPException:
        await db.rollback()
        raise

    subtotal = sum(line.line_total_cents for line in priced)

    customer, account = await find_or_create_customer(
        db,
        email=email,
        name=request.customer.name.strip(),
        phone=request.customer.phone.strip(),
    )

    points_used = 0
    if request.use_points and session.is_verified and session.points_reserved > 0:
        await lock_account(db, account.id)
        available = await available_points(db, account.id)
        points_used = clamp_points(session.points_reserved, available, subtotal)
    discount = points_used * CENTS_PER_POINT
    final_total = subtotal - discount

    # Claims go in trip_id order so concurrent orders lock trip rows in one
    # global order.
    requested: dict[uuid.UUID, int] = defaultdict(int)
    trip_names: dict[uuid.UUID, str] = {}
    for line in priced:
        requested[line.trip_id] += line.qty
        trip_names[line.trip_id] = line.trip_name

    for trip_id in sorted(requested):
        claim = await claim_seats(db, trip_id=trip_id, qty=requested[trip_id])
        if not claim.claimed:
            await db.rollback()
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={
                    "message": f"Only {claim.seats_left} seats left for {trip_names[trip_id]}",
                    "trip_id": str(trip_id),
                    "trip_name": trip_names[trip_id],
                    "requested_qty": requested[trip_id],
                    "available_seats": claim.seats_left,
                },
            )

    # Passengers are matched to cart lines of the same trip in request order.
    passengers_by_trip: dict[uuid.UUID, list[dict]] = defaultdict(list)
    for item in request.items:
        passengers_by_trip[item.trip_id].extend(
            p.model_dump(mode="json") for p in item.passengers
        )

    items = []
    for line in priced:
        queue = passengers_by_trip[line.trip_id]
        line_passengers, passengers_by_trip[line.trip_id] = queue[: line.qty], queue[line.qty :]
        items.append(
            OrderItem(
                trip_id=line.trip_id,
                departure_point_id=line.departure_point_id,
                qty=line.qty,
                unit_price_cents=line.unit_price_cents,
                passengers=line_passengers,
            )
        )

    invoice = request.invoice
    order = Order(
        order_number=await _generate_order_number(db, now.year),
        status=OrderStatus.SUBMITTED,
        checkout_session_id=session.id,
        customer_id=customer.id,
        customer_name=request.customer.name.strip(),
        customer_email=email,
        customer_phone=request.customer.phone.strip(),
        invoice_type=invoice.type,
        company_name=invoice.company_name,
        company_tax_id=invoice.tax_id,
        company_address=invoice.address,
        subtotal_cents=subtotal,
        discount_cents=discount,
        points_used=points_used,
        total_cents=final_total,
        currency=settings.CURRENCY,
        submitted_at=now,
        items=items,
        payments=[],
    )
    db.add(order)
    await db.flush()

    if points_used > 0:
        await spend(
            db,
            account_id=account.id,
            points=points_used,
            order_id=order.id,
            note=f"points used on order {order.order_number}",
        )

    session.status = CheckoutSessionStatus.PAID
    session.points_reserved = points_used
    session.bound_customer_id = customer.id

    await db.commit()

    logger.info(
        "Created order %s for session %s (subtotal=%d, points=%d, total=%d)",
        order.order_number,
        session.id,
        subtotal,
        points_used,
        final_total,
    )

    if email_client is not None:
        try:
            await email_client.send_order_confirmation(
                to_email=order.customer_email,
                customer_name=order.customer_name,
                order_number=order.order_number,
                total_cents=order.total_cents,
                currency=order.currency,
                items=[
                    {
                        "trip_name": line.trip_name,
                        "qty": line.qty,
                        "unit_price_cents": line.unit_price_cents,
                    }
                    for line in priced
                ],
                points_used=points_used,
            )
        except Exception as exc:
            logger.warning(
                "Failed to send order confirmation for %s: %s", order.order_number, exc
            )

    return order


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


def preferred_payment(order: Order) -> Optional[Payment]:
    """The attempt a customer should see: PAID, else latest PENDING, else latest."""
    if not order.payments:
        return None
    paid = [p for p in order.payments if p.status == PaymentStatus.PAID]
    if paid:
        return paid[0]
    pending = [p for p in order.payments if p.status == PaymentStatus.PENDING]
    return max(pending or order.payments, key=lambda p: p.created_at)


def manual_transfer_instructions(order: Order) -> ManualTransferInstructions:
    return ManualTransferInstructions(
        bank_account=get_settings().BANK_ACCOUNT,
        transfer_title=order.order_number,
        amount_cents=order.total_cents,
        currency=order.currency,
    )


async def lookup_order(
    db: AsyncSession, *, order_number: str, email: str
) -> tuple[Order, Optional[Payment], Optional[ManualTransferInstructions]]:
    """Find an order by number for the email it was placed with.

    A wrong email is indistinguishable from an unknown order number.
    """
    result = await db.execute(
        select(Order).where(Order.order_number == order_number.strip().upper())
    )
    order = result.scalar_one_or_none()
    if order is None or order.customer_email != email.strip().lower():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    payment = preferred_payment(order)
    instructions = None
    if payment is not None and payment.provider == PaymentProvider.MANUAL_TRANSFER:
        instructions = manual_transfer_instructions(order)
    return order, payment, instructions
