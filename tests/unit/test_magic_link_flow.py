"""Unit tests for issuing and redeeming magic links."""

import asyncio
from datetime import timedelta

import pytest
from fastapi import HTTPException
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from services.reservations_service.models import (
    CheckoutSession,
    CheckoutSessionStatus,
    MagicLinkToken,
)
from services.reservations_service.services.expiry import apply_session_expiry
from services.reservations_service.services.magic_link import (
    GENERIC_MESSAGE,
    MagicLinkRedeemError,
    issue_magic_link,
    redeem_magic_link,
)
from sqlalchemy import func, select
from tests.factories import MagicLinkTokenFactory
from tests.fakes import FakeEmailClient
from tests.helpers import cart_line, seed_customer_with_points, seed_session, seed_trip


async def _token_count(db, session_id):
    result = await db.execute(
        select(func.count()).select_from(MagicLinkToken).where(
            MagicLinkToken.session_id == session_id
        )
    )
    return result.scalar_one()


# ---------------------------------------------------------------------------
# issue_magic_link
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_issue_for_unknown_email_is_indistinguishable(db_session):
    """No account: same message, no token row, no email."""
    trip = await seed_trip(db_session)
    session = await seed_session(db_session, email="nobody@test.com", cart=[cart_line(trip)])
    session_id = session.id
    email_client = FakeEmailClient()

    issued = await issue_magic_link(
        db_session, session_id=session_id, email="nobody@test.com", email_client=email_client
    )

    assert issued.message == GENERIC_MESSAGE
    assert issued.token is None
    assert email_client.sent == []
    assert await _token_count(db_session, session_id) == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_issue_for_account_without_points_is_indistinguishable(db_session):
    trip = await seed_trip(db_session)
    customer, _ = await seed_customer_with_points(db_session, points=0)
    session = await seed_session(db_session, email=customer.email, cart=[cart_line(trip)])
    session_id = session.id

    issued = await issue_magic_link(db_session, session_id=session.id, email=customer.email)

    assert issued.message == GENERIC_MESSAGE
    assert await _token_count(db_session, session_id) == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_issue_sends_link_and_reuses_live_token(db_session):
    trip = await seed_trip(db_session)
    customer, _ = await seed_customer_with_points(db_session, points=35)
    session = await seed_session(db_session, email=customer.email, cart=[cart_line(trip)])
    email_client = FakeEmailClient()

    first = await issue_magic_link(
        db_session, session_id=session.id, email=customer.email, email_client=email_client
    )
    second = await issue_magic_link(
        db_session, session_id=session.id, email=customer.email, email_client=email_client
    )

    assert first.message == second.message == GENERIC_MESSAGE
    assert first.token is None
    assert await _token_count(db_session, session.id) == 1

    sent = email_client.of_type("checkout_magic_link")
    assert len(sent) == 2
    assert sent[0]["to_email"] == customer.email
    assert sent[0]["data"]["link"] == sent[1]["data"]["link"]
    assert sent[0]["data"]["points_available"] == 35
    token_value = sent[0]["data"]["link"].rsplit("/", 1)[-1]
    assert len(token_value) == 64


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize(
    "environment,echoed",
    [("development", True), ("local", True), ("test", False), ("production", False)],
)
async def test_token_echo_is_limited_to_development(db_session, monkeypatch, environment, echoed):
    monkeypatch.setattr(get_settings(), "ENVIRONMENT", environment)
    trip = await seed_trip(db_session)
    customer, _ = await seed_customer_with_points(db_session, points=35)
    session = await seed_session(db_session, email=customer.email, cart=[cart_line(trip)])
    email_client = FakeEmailClient()

    issued = await issue_magic_link(
        db_session, session_id=session.id, email=customer.email, email_client=email_client
    )

    (sent,) = email_client.of_type("checkout_magic_link")
    if echoed:
        assert sent["data"]["link"].endswith(f"/api/checkout/magic-link/{issued.token}")
    else:
        assert issued.token is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_issue_rejects_email_mismatch(db_session):
    trip = await seed_trip(db_session)
    customer, _ = await seed_customer_with_points(db_session, points=35)
    session = await seed_session(db_session, email=customer.email, cart=[cart_line(trip)])

    with pytest.raises(HTTPException) as exc_info:
        await issue_magic_link(db_session, session_id=session.id, email="other@test.com")

    assert exc_info.value.status_code == 403


# ---------------------------------------------------------------------------
# redeem_magic_link
# ---------------------------------------------------------------------------


async def _issued_link(db, *, points=50, price_cents=10000, **token_overrides):
    trip = await seed_trip(db, price_cents=price_cents)
    customer, _ = await seed_customer_with_points(db, points=points)
    session = await seed_session(db, email=customer.email, cart=[cart_line(trip)])
    token = MagicLinkTokenFactory.create(
        session_id=session.id, customer_id=customer.id, **token_overrides
    )
    db.add(token)
    await db.commit()
    return session, customer, token


@pytest.mark.asyncio
@pytest.mark.unit
async def test_redeem_binds_session_and_reserves_clamped_points(db_session):
    """50 points, 100.00 cart: redemption reserves the 20 point cap."""
    session, customer, token = await _issued_link(db_session)

    redemption = await redeem_magic_link(db_session, token.token)

    assert redemption.session_id == session.id
    assert redemption.points_reserved == 20
    await db_session.refresh(session)
    await db_session.refresh(token)
    assert session.bound_customer_id == customer.id
    assert session.points_reserved == 20
    assert token.used_at is not None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_redeem_twice_reports_used_token(db_session):
    _, _, token = await _issued_link(db_session)
    await redeem_magic_link(db_session, token.token)

    with pytest.raises(MagicLinkRedeemError) as exc_info:
        await redeem_magic_link(db_session, token.token)

    assert exc_info.value.code == "token_used"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_redeem_unknown_token(db_session):
    with pytest.raises(MagicLinkRedeemError) as exc_info:
        await redeem_magic_link(db_session, "does-not-exist")
    assert exc_info.value.code == "invalid_token"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_redeem_expired_token(db_session):
    _, _, token = await _issued_link(
        db_session, expires_at=utc_now() - timedelta(seconds=1)
    )

    with pytest.raises(MagicLinkRedeemError) as exc_info:
        await redeem_magic_link(db_session, token.token)

    assert exc_info.value.code == "token_expired"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_redeem_on_expired_session_expires_it(db_session):
    session, _, token = await _issued_link(db_session)
    session.expires_at = utc_now() - timedelta(minutes=1)
    await db_session.commit()

    with pytest.raises(MagicLinkRedeemError) as exc_info:
        await redeem_magic_link(db_session, token.token)

    assert exc_info.value.code == "session_expired"
    await db_session.refresh(session)
    assert session.status == CheckoutSessionStatus.EXPIRED
    assert session.bound_customer_id is None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_redeem_on_finished_session_is_rejected(db_session):
    session, _, token = await _issued_link(db_session)
    session.status = CheckoutSessionStatus.CANCELLED
    await db_session.commit()

    with pytest.raises(MagicLinkRedeemError) as exc_info:
        await redeem_magic_link(db_session, token.token)

    assert exc_info.value.code == "session_invalid"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_concurrent_redemptions_use_token_once(session_factory):
    async with session_factory() as setup:
        session, _, token = await _issued_link(setup)

    async def attempt():
        async with session_factory() as db:
            try:
                redemption = await redeem_magic_link(db, token.token)
            except MagicLinkRedeemError as exc:
                return exc.code
            return redemption.points_reserved

    results = await asyncio.gather(*(attempt() for _ in range(3)))

    assert sorted(results, key=str) == [20, "token_used", "token_used"]
    async with session_factory() as check:
        stored = await check.get(CheckoutSession, session.id)
        assert stored.points_reserved == 20


@pytest.mark.asyncio
@pytest.mark.unit
async def test_redeem_while_session_is_being_expired(session_factory):
    """Redemption waits for the expiring transaction and fails cleanly."""
    async with session_factory() as setup:
        session, _, token = await _issued_link(setup)
        session.expires_at = utc_now() - timedelta(seconds=1)
        await setup.commit()

    locked = asyncio.Event()

    async def expire():
        async with session_factory() as db:
            result = await db.execute(
                select(CheckoutSession)
                .where(CheckoutSession.id == session.id)
                .with_for_update()
            )
            stale = result.scalar_one()
            locked.set()
            await asyncio.sleep(0.3)
            await apply_session_expiry(db, stale, now=utc_now())
            await db.commit()
            return "expired"

    async def redeem():
        await locked.wait()
        async with session_factory() as db:
            try:
                await redeem_magic_link(db, token.token)
            except MagicLinkRedeemError as exc:
                return exc.code
            return "redeemed"

    results = await asyncio.gather(expire(), redeem())

    assert results == ["expired", "token_used"]
    async with session_factory() as check:
        stored = await check.get(CheckoutSession, session.id)
        assert stored.status == CheckoutSessionStatus.EXPIRED
        assert stored.bound_customer_id is None
