"""Loyalty ledger: idempotent earn/spend, ledger-derived balances."""

import uuid
from datetime import datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from services.reservations_service.models import (
    Customer,
    LoyaltyAccount,
    LoyaltyTransaction,
    LoyaltyTxnType,
)
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Points economics
# ---------------------------------------------------------------------------
CENTS_PER_POINT = 100
# Max discount is 20% of the cart: floor(total / 500) points.
POINTS_CAP_DIVISOR_CENTS = 500
# 10% of the post-discount total is earned back: floor(total / 1000) points.
POINTS_EARN_DIVISOR_CENTS = 1000


def points_cap(cart_total_cents: int) -> int:
    return max(0, cart_total_cents // POINTS_CAP_DIVISOR_CENTS)


def points_to_earn(final_total_cents: int) -> int:
    return max(0, final_total_cents // POINTS_EARN_DIVISOR_CENTS)


def clamp_points(requested: int, available: int, cart_total_cents: int) -> int:
    return max(0, min(requested, available, points_cap(cart_total_cents)))


def calculate_expiration_date(created_at: datetime) -> datetime:
    """Earned points expire one year after they were granted."""
    try:
        return created_at.replace(year=created_at.year + 1)
    except ValueError:
        # 29 February
        return created_at.replace(year=created_at.year + 1, day=28)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


async def get_account_for_email(
    db: AsyncSession, email: str
) -> Optional[LoyaltyAccount]:
    result = await db.execute(
        select(LoyaltyAccount)
        .join(Customer, Customer.id == LoyaltyAccount.customer_id)
        .where(func.lower(Customer.email) == email.strip().lower())
    )
    return result.scalar_one_or_none()


async def get_account_for_customer(
    db: AsyncSession, customer_id: uuid.UUID
) -> Optional[LoyaltyAccount]:
    result = await db.execute(
        select(LoyaltyAccount).where(LoyaltyAccount.customer_id == customer_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_account(
    db: AsyncSession, customer: Customer
) -> LoyaltyAccount:
    account = await get_account_for_customer(db, customer.id)
    if account:
        return account
    account = LoyaltyAccount(customer_id=customer.id, points_balance=0)
    db.add(account)
    await db.flush()
    return account


# ---------------------------------------------------------------------------
# Balances
# ---------------------------------------------------------------------------


async def available_points(
    db: AsyncSession,
    account_id: uuid.UUID,
    *,
    as_of: Optional[datetime] = None,
) -> int:
    """Spendable points computed from the ledger, never from the cache.

    Non-expired EARN minus every SPEND, floored at zero. Spends are charged
    against the oldest grants first, so subtracting the full spend total from
    the still-valid grants gives the same result as walking the ledger.
    """
    as_of = as_of or utc_now()
    earned = func.coalesce(
        func.sum(
            case(
                (
                    and_(
                        LoyaltyTransaction.type == LoyaltyTxnType.EARN,
                        or_(
                            LoyaltyTransaction.expires_at.is_(None),
                            LoyaltyTransaction.expires_at > as_of,
                        ),
                    ),
                    LoyaltyTransaction.points,
                ),
                else_=0,
            )
        ),
        0,
    )
    spent = func.coalesce(
        func.sum(
            case(
                (
                    LoyaltyTransaction.type == LoyaltyTxnType.SPEND,
                    LoyaltyTransaction.points,
                ),
                else_=0,
            )
        ),
        0,
    )
    result = await db.execute(
        select(earned, spent).where(LoyaltyTransaction.account_id == account_id)
    )
    earned_total, spent_total = result.one()
    # SPEND rows are stored negative
    return max(0, int(earned_total) + int(spent_total))


async def refresh_cached_balance(db: AsyncSession, account_id: uuid.UUID) -> int:
    """Recompute ``points_balance`` from the ledger and store it."""
    balance = await available_points(db, account_id)
    await db.execute(
        update(LoyaltyAccount)
        .where(LoyaltyAccount.id == account_id)
        .values(points_balance=balance)
        .execution_options(synchronize_session="fetch")
    )
    return balance


async def _adjust_cached_balance(
    db: AsyncSession, account_id: uuid.UUID, delta: int
) -> None:
    await db.execute(
        update(LoyaltyAccount)
        .where(LoyaltyAccount.id == account_id)
        .values(points_balance=func.greatest(0, LoyaltyAccount.points_balance + delta))
        .execution_options(synchronize_session="fetch")
    )


# ---------------------------------------------------------------------------
# Ledger writes (caller commits)
# ---------------------------------------------------------------------------


async def lock_account(db: AsyncSession, account_id: uuid.UUID) -> LoyaltyAccount:
    result = await db.execute(
        select(LoyaltyAccount).where(LoyaltyAccount.id == account_id).with_for_update()
    )
    return result.scalar_one()


async def _existing_for_order(
    db: AsyncSession, order_id: uuid.UUID, txn_type: LoyaltyTxnType
) -> Optional[LoyaltyTransaction]:
    result = await db.execute(
        select(LoyaltyTransaction).where(
            LoyaltyTransaction.order_id == order_id,
            LoyaltyTransaction.type == txn_type,
        )
    )
    return result.scalar_one_or_none()


async def spend(
    db: AsyncSession,
    *,
    account_id: uuid.UUID,
    points: int,
    order_id: uuid.UUID,
    note: str,
) -> Optional[LoyaltyTransaction]:
    """Record a SPEND for an order.

    Returns the existing row on replay, ``None`` when there is nothing to spend.
    """
    if points <= 0:
        return None

    await lock_account(db, account_id)
    existing = await _existing_for_order(db, order_id, LoyaltyTxnType.SPEND)
    if existing:
        logger.info("Idempotent SPEND replay for order %s -> txn=%s", order_id, existing.id)
        return existing

    txn = LoyaltyTransaction(
        account_id=account_id,
        type=LoyaltyTxnType.SPEND,
        points=-points,
        order_id=order_id,
        note=note,
    )
    db.add(txn)
    await db.flush()
    await _adjust_cached_balance(db, account_id, -points)

    logger.info("Spent %d points on account %s for order %s", points, account_id, order_id)
    return txn


async def earn(
    db: AsyncSession,
    *,
    account_id: uuid.UUID,
    points: int,
    order_id: uuid.UUID,
    note: str,
    expires_at: Optional[datetime] = None,
) -> Optional[LoyaltyTransaction]:
    """Record an EARN for an order (idempotent on the order)."""
    if points <= 0:
        return None

    await lock_account(db, account_id)
    existing = await _existing_for_order(db, order_id, LoyaltyTxnType.EARN)
    if existing:
        logger.info("Idempotent EARN replay for order %s -> txn=%s", order_id, existing.id)
        return existing

    txn = LoyaltyTransaction(
        account_id=account_id,
        type=LoyaltyTxnType.EARN,
        points=points,
        order_id=order_id,
        note=note,
        expires_at=expires_at,
    )
    db.add(txn)
    await db.flush()
    await _adjust_cached_balance(db, account_id, points)

    logger.info("Earned %d points on account %s for order %s", points, account_id, order_id)
    return txn


async def reverse_spend(
    db: AsyncSession,
    *,
    order_id: uuid.UUID,
    order_number: str,
) -> int:
    """Re-credit an order's SPEND as a new EARN row. Returns points restored.

    The original SPEND row is never touched.
    """
    spend_txn = await _existing_for_order(db, order_id, LoyaltyTxnType.SPEND)
    if spend_txn is None:
        return 0

    refund = await earn(
        db,
        account_id=spend_txn.account_id,
        points=abs(spend_txn.points),
        order_id=order_id,
        note=f"refund for cancelled order {order_number}",
    )
    return refund.points if refund else 0
