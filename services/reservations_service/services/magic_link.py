"""Magic-link verifier: one-time tokens that bind a checkout to a customer.

Issuing never reveals whether an email has an account or a balance: every
outcome returns the same generic message. Redeeming marks the token used and
binds the session in the same transaction that reserves the points.
"""

import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException, status
from libs.common.config import get_settings
from libs.common.datetime_utils import ensure_aware, utc_now
from libs.common.emails.client import EmailClient
from libs.common.logging import get_logger
from services.reservations_service.models import (
    CheckoutSession,
    CheckoutSessionStatus,
    MagicLinkToken,
)
from services.reservations_service.services.checkout import cart_total_cents, get_session
from services.reservations_service.services.expiry import apply_session_expiry, is_expired
from services.reservations_service.services.loyalty import (
    available_points,
    clamp_points,
    get_account_for_customer,
    get_account_for_email,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

GENERIC_MESSAGE = (
    "If this email has loyalty points available, a verification link is on its way."
)
TOKEN_BYTES = 32
# Environments where the issued token is returned to the caller for manual testing.
TOKEN_ECHO_ENVIRONMENTS = frozenset({"local", "development"})


@dataclass
class MagicLinkIssue:
    message: str
    token: Optional[str] = None


@dataclass
class MagicLinkRedemption:
    session_id: uuid.UUID
    points_reserved: int


class MagicLinkRedeemError(Exception):
    """Redemption failure carrying a redirect-safe error code."""

    MESSAGES = {
        "invalid_token": "This link is not valid.",
        "token_used": "This link has already been used.",
        "token_expired": "This link has expired. Request a new one.",
        "session_expired": "Your checkout session has expired.",
        "session_invalid": "This checkout can no longer be changed.",
    }

    def __init__(self, code: str):
        self.code = code
        self.message = self.MESSAGES.get(code, "Verification failed.")
        super().__init__(self.message)


def build_magic_link(token: str) -> str:
    return f"{get_settings().SERVER_PUBLIC_URL.rstrip('/')}/api/checkout/magic-link/{token}"


async def issue_magic_link(
    db: AsyncSession,
    *,
    session_id: uuid.UUID,
    email: str,
    email_client: Optional[EmailClient] = None,
) -> MagicLinkIssue:
    settings = get_settings()
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

    if email.strip().lower() != session.customer_email:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Email does not match the checkout session",
        )

    account = await get_account_for_email(db, session.customer_email)
    points = await available_points(db, account.id) if account else 0
    if account is None or points <= 0:
        await db.rollback()
        return MagicLinkIssue(message=GENERIC_MESSAGE)

    now = utc_now()
    existing = await db.execute(
        select(MagicLinkToken).where(
            MagicLinkToken.session_id == session.id,
            MagicLinkToken.customer_id == account.customer_id,
            MagicLinkToken.used_at.is_(None),
            MagicLinkToken.expires_at > now,
        )
    )
    link_token = existing.scalars().first()
    if link_token is None:
        link_token = MagicLinkToken(
            token=secrets.token_hex(TOKEN_BYTES),
            session_id=session.id,
            customer_id=account.customer_id,
            expires_at=now + timedelta(minutes=settings.MAGIC_LINK_TTL_MINUTES),
        )
        db.add(link_token)
        logger.info("Issued magic link for session %s", session.id)
    else:
        logger.info("Reusing live magic link for session %s", session.id)

    token_value = link_token.token
    await db.commit()

    if email_client is not None:
        try:
            sent = await email_client.send_magic_link(
                to_email=session.customer_email,
                link=build_magic_link(token_value),
                points_available=points,
                ttl_minutes=settings.MAGIC_LINK_TTL_MINUTES,
            )
            if not sent:
                logger.warning("Magic link email was not accepted for session %s", session.id)
        except Exception as exc:
            logger.warning("Failed to send magic link for session %s: %s", session.id, exc)

    echo = token_value if settings.ENVIRONMENT in TOKEN_ECHO_ENVIRONMENTS else None
    return MagicLinkIssue(message=GENERIC_MESSAGE, token=echo)


async def redeem_magic_link(db: AsyncSession, token: str) -> MagicLinkRedemption:
    """Consume a token: bind the customer and reserve clamped points.

    Locks the session first and the token second, the same order the expiry
    path uses. The token is re-checked under its lock, so of two concurrent
    redemptions exactly one sees it unused.
    """
    lookup = await db.execute(
        select(MagicLinkToken.session_id).where(MagicLinkToken.token == token)
    )
    session_id = lookup.scalar_one_or_none()
    if session_id is None:
        await db.rollback()
        raise MagicLinkRedeemError("invalid_token")

    session_result = await db.execute(
        select(CheckoutSession)
        .where(CheckoutSession.id == session_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    session = session_result.scalar_one()

    result = await db.execute(
        select(MagicLinkToken)
        .where(MagicLinkToken.token == token)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    link_token = result.scalar_one()
    now = utc_now()

    if link_token.used_at is not None:
        await db.rollback()
        raise MagicLinkRedeemError("token_used")
    if ensure_aware(link_token.expires_at) <= now:
        await db.rollback()
        raise MagicLinkRedeemError("token_expired")

    if session.status == CheckoutSessionStatus.PENDING and is_expired(session, now):
        await apply_session_expiry(db, session, now=now)
        await db.commit()
        raise MagicLinkRedeemError("session_expired")
    if session.status != CheckoutSessionStatus.PENDING:
        await db.rollback()
        raise MagicLinkRedeemError("session_invalid")

    account = await get_account_for_customer(db, link_token.customer_id)
    available = await available_points(db, account.id) if account else 0
    try:
        total = await cart_total_cents(db, session.cart_snapshot)
    except HTTPException:
        await db.rollback()
        raise MagicLinkRedeemError("session_invalid")

    link_token.used_at = now
    session.bound_customer_id = link_token.customer_id
    session.points_reserved = clamp_points(available, available, total)
    points_reserved = session.points_reserved

    await db.commit()

    logger.info(
        "Redeemed magic link for session %s (points_reserved=%d)",
        session.id,
        points_reserved,
    )
    return MagicLinkRedemption(session_id=session.id, points_reserved=points_reserved)
