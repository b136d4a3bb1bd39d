"""Checkout session and magic-link endpoints."""

import uuid
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from libs.common.config import get_settings
from libs.common.emails.client import EmailClient, get_email_client
from libs.common.logging import get_logger
from libs.common.rate_limit import MAGIC_LINK_LIMIT, limiter
from libs.db.session import get_async_db
from services.reservations_service.models import CheckoutSession
from services.reservations_service.schemas import (
    ApplyPointsRequest,
    CreateSessionRequest,
    CreateSessionResponse,
    MagicLinkRequest,
    MagicLinkResponse,
    PricedCartLine,
    SessionResponse,
    UpdateCartRequest,
)
from services.reservations_service.services.checkout import (
    apply_points,
    create_session,
    get_session,
    price_cart,
    update_cart,
)
from services.reservations_service.services.loyalty import points_cap
from services.reservations_service.services.magic_link import (
    MagicLinkRedeemError,
    issue_magic_link,
    redeem_magic_link,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)
router = APIRouter(prefix="/checkout", tags=["checkout"])


async def _session_response(db: AsyncSession, session: CheckoutSession) -> SessionResponse:
    priced = await price_cart(db, session.cart_snapshot)
    total = sum(line.line_total_cents for line in priced)
    return SessionResponse(
        session_id=session.id,
        status=session.status,
        customer_email=session.customer_email,
        cart=[
            PricedCartLine(
                trip_id=line.trip_id,
                qty=line.qty,
                departure_point_id=line.departure_point_id,
                unit_price_cents=line.unit_price_cents,
                trip_name=line.trip_name,
                line_total_cents=line.line_total_cents,
            )
            for line in priced
        ],
        cart_total_cents=total,
        points_cap=points_cap(total),
        points_reserved=session.points_reserved,
        loyalty_verified=session.is_verified,
        expires_at=session.expires_at,
    )


@router.post(
    "/sessions",
    response_model=CreateSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_checkout_session(
    payload: CreateSessionRequest,
    db: AsyncSession = Depends(get_async_db),
):
    """Start a checkout for a cart. Points can only be used after verification."""
    session, preview_points = await create_session(db, email=payload.email, cart=payload.cart)
    return CreateSessionResponse(
        session_id=session.id,
        status=session.status,
        expires_at=session.expires_at,
        loyalty_verified=False,
        has_loyalty_points=preview_points > 0,
        preview_points_available=preview_points,
    )


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def read_checkout_session(
    session_id: uuid.UUID,
    db: AsyncSession = Depends(get_async_db),
):
    session = await get_session(db, session_id)
    return await _session_response(db, session)


@router.put("/sessions/{session_id}/cart", response_model=SessionResponse)
async def replace_cart(
    session_id: uuid.UUID,
    payload: UpdateCartRequest,
    db: AsyncSession = Depends(get_async_db),
):
    session = await update_cart(db, session_id, payload.cart)
    return await _session_response(db, session)


@router.post("/sessions/{session_id}/points", response_model=SessionResponse)
async def reserve_points(
    session_id: uuid.UUID,
    payload: ApplyPointsRequest,
    db: AsyncSession = Depends(get_async_db),
):
    """Reserve loyalty points; the amount is clamped, never rejected."""
    session = await apply_points(db, session_id, payload.points)
    return await _session_response(db, session)


@router.post("/sessions/{session_id}/magic-link", response_model=MagicLinkResponse)
@limiter.limit(MAGIC_LINK_LIMIT)
async def request_magic_link(
    request: Request,
    session_id: uuid.UUID,
    payload: MagicLinkRequest,
    db: AsyncSession = Depends(get_async_db),
    email_client: EmailClient = Depends(get_email_client),
):
    issued = await issue_magic_link(
        db, session_id=session_id, email=payload.email, email_client=email_client
    )
    return MagicLinkResponse(message=issued.message, token=issued.token)


@router.get("/magic-link/{token}")
async def redeem_link(
    token: str,
    db: AsyncSession = Depends(get_async_db),
):
    """Consume a magic link and send the browser back to the cart page."""
    cart_url = f"{get_settings().FRONTEND_URL.rstrip('/')}/koszyk.html"
    try:
        redemption = await redeem_magic_link(db, token)
    except MagicLinkRedeemError as exc:
        logger.info("Magic link redemption rejected: %s", exc.code)
        query = urlencode({"error": exc.code, "message": exc.message})
        return RedirectResponse(f"{cart_url}?{query}", status_code=status.HTTP_302_FOUND)

    query = urlencode(
        {"session": str(redemption.session_id), "points": redemption.points_reserved}
    )
    return RedirectResponse(f"{cart_url}?{query}", status_code=status.HTTP_302_FOUND)
