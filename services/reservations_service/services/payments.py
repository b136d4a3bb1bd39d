"""Payment attempts and gateway notification handling."""

import re
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import HTTPException, status
from libs.common.config import get_settings
from libs.common.emails.client import EmailClient
from libs.common.logging import get_logger
from services.reservations_service.gateway_client import GatewayClient, GatewayError
from services.reservations_service.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
)
from services.reservations_service.schemas.orders import ManualTransferInstructions
from services.reservations_service.services.orders import manual_transfer_instructions
from services.reservations_service.services.settlement import lock_order, mark_paid
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

ORDER_NUMBER_IN_SESSION = re.compile(r"^(DTS-\d{4}-\d{6})")

# Notification fields; legacy integrations prefix them with ``p24_``.
WEBHOOK_FIELDS = ("merchantId", "posId", "sessionId", "amount", "currency", "orderId", "sign")
LEGACY_PREFIX = "p24_"
LEGACY_ALIASES = {
    "merchantId": "merchant_id",
    "posId": "pos_id",
    "sessionId": "session_id",
    "amount": "amount",
    "currency": "currency",
    "orderId": "order_id",
    "sign": "sign",
}


@dataclass
class PaymentStart:
    payment: Payment
    resumed: bool = False
    redirect_url: Optional[str] = None
    manual_transfer: Optional[ManualTransferInstructions] = None


@dataclass
class NotificationOutcome:
    status: str
    signature_variant: Optional[str] = None


# ---------------------------------------------------------------------------
# Starting a payment
# ---------------------------------------------------------------------------


def _pending_attempts(order: Order, provider: PaymentProvider) -> list[Payment]:
    return [
        p
        for p in order.payments
        if p.provider == provider and p.status == PaymentStatus.PENDING
    ]


def gateway_redirect_url(gateway: Optional[GatewayClient], payment: Payment) -> Optional[str]:
    if gateway is None or not payment.external_id:
        return None
    return gateway.get_payment_url(payment.external_id)


async def start_payment(
    db: AsyncSession,
    *,
    order_id: uuid.UUID,
    provider: PaymentProvider,
    force_new: bool = False,
    gateway: Optional[GatewayClient] = None,
    email_client: Optional[EmailClient] = None,
) -> PaymentStart:
    """Open (or resume) a payment attempt for a SUBMITTED order.

    A pending attempt of the same provider is resumed unless ``force_new``.
    Gateway registration happens after the attempt is committed so a slow
    gateway never holds the order lock.
    """
    settings = get_settings()
    order = await lock_order(db, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    if order.status == OrderStatus.CANCELLED:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Order is cancelled")

    paid = next((p for p in order.payments if p.status == PaymentStatus.PAID), None)
    if paid is not None:
        await db.commit()
        return PaymentStart(payment=paid, resumed=True)

    pending = _pending_attempts(order, provider)
    if pending and not force_new:
        latest = max(pending, key=lambda p: p.created_at)
        await db.commit()
        if provider == PaymentProvider.MANUAL_TRANSFER:
            return PaymentStart(
                payment=latest,
                resumed=True,
                manual_transfer=manual_transfer_instructions(order),
            )
        return PaymentStart(
            payment=latest,
            resumed=True,
            redirect_url=gateway_redirect_url(gateway, latest),
        )
    for attempt in pending:
        attempt.status = PaymentStatus.CANCELLED

    if provider == PaymentProvider.MANUAL_TRANSFER:
        payment = Payment(
            order_id=order.id,
            provider=provider,
            status=PaymentStatus.PENDING,
            amount_cents=order.total_cents,
            currency=order.currency,
            payment_metadata={"transfer_title": order.order_number},
        )
        order.payments.append(payment)
        await db.commit()

        instructions = manual_transfer_instructions(order)
        logger.info("Manual transfer requested for order %s", order.order_number)
        if email_client is not None:
            try:
                await email_client.send_manual_transfer_instructions(
                    to_email=order.customer_email,
                    order_number=order.order_number,
                    amount_cents=order.total_cents,
                    currency=order.currency,
                    bank_account=instructions.bank_account,
                )
            except Exception as exc:
                logger.warning(
                    "Failed to send transfer instructions for %s: %s",
                    order.order_number,
                    exc,
                )
        return PaymentStart(payment=payment, manual_transfer=instructions)

    if gateway is None:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Online payments are not configured",
        )

    session_id = f"{order.order_number}-{secrets.token_hex(4)}"
    payment = Payment(
        order_id=order.id,
        provider=provider,
        status=PaymentStatus.PENDING,
        amount_cents=order.total_cents,
        currency=order.currency,
        external_session_id=session_id,
    )
    order.payments.append(payment)
    await db.commit()

    try:
        registered = await gateway.create_transaction(
            session_id=session_id,
            amount_cents=order.total_cents,
            currency=order.currency,
            description=f"Order {order.order_number}",
            email=order.customer_email,
            client_name=order.customer_name,
            phone=order.customer_phone,
            return_url=f"{settings.FRONTEND_URL.rstrip('/')}/platnosc.html?order={order.order_number}",
            webhook_url=f"{settings.SERVER_PUBLIC_URL.rstrip('/')}/api/payments/gateway/webhook",
            time_limit_minutes=settings.GATEWAY_TRANSACTION_TIME_LIMIT_MINUTES,
        )
    except GatewayError as exc:
        payment.status = PaymentStatus.FAILED
        payment.payment_metadata = {"error": exc.message, **(exc.response_data or {})}
        await db.commit()
        logger.error("Gateway registration failed for order %s: %s", order.order_number, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment gateway unavailable, please try again",
        )

    payment.external_id = registered.token
    payment.payment_metadata = {"sign_format": registered.sign_format}
    await db.commit()

    logger.info(
        "Started gateway payment %s for order %s", session_id, order.order_number
    )
    return PaymentStart(payment=payment, redirect_url=gateway.get_payment_url(registered.token))


# ---------------------------------------------------------------------------
# Gateway notifications
# ---------------------------------------------------------------------------


def normalize_notification(raw: dict[str, Any]) -> dict[str, Any]:
    """Map legacy ``p24_*`` keys onto the current field names.

    Raises 400 when a required field is missing.
    """
    payload: dict[str, Any] = {}
    for name in WEBHOOK_FIELDS:
        value = raw.get(name)
        if value is None:
            value = raw.get(LEGACY_PREFIX + LEGACY_ALIASES[name])
        if value is None or value == "":
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Missing notification field: {name}",
            )
        payload[name] = value
    if "methodId" in raw:
        payload["methodId"] = raw["methodId"]
    return payload


async def _find_gateway_payment(db: AsyncSession, session_id: str) -> Optional[Payment]:
    result = await db.execute(
        select(Payment).where(Payment.external_session_id == session_id)
    )
    payment = result.scalar_one_or_none()
    if payment is not None:
        return payment

    match = ORDER_NUMBER_IN_SESSION.match(session_id)
    if not match:
        return None
    result = await db.execute(
        select(Payment)
        .join(Order, Order.id == Payment.order_id)
        .where(
            Order.order_number == match.group(1),
            Payment.provider == PaymentProvider.GATEWAY,
        )
        .order_by(Payment.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def handle_gateway_notification(
    db: AsyncSession,
    *,
    raw_payload: dict[str, Any],
    gateway: Optional[GatewayClient],
    email_client: Optional[EmailClient] = None,
) -> NotificationOutcome:
    """Authenticate, verify and settle one gateway notification.

    Every settled or already-settled outcome is acknowledged so the gateway
    stops retrying; transient failures raise 503 so it retries later.
    """
    payload = normalize_notification(raw_payload)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Online payments are not configured",
        )

    check = gateway.verify_webhook_signature(payload)
    if not check.valid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid signature ({check.reason})",
        )

    session_id = str(payload["sessionId"])
    payment = await _find_gateway_payment(db, session_id)
    if payment is None:
        logger.warning(
            "Gateway notification for unknown session %s",
            session_id,
            extra={"extra_fields": {"session_id": session_id, "order_id": payload["orderId"]}},
        )
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    try:
        amount = int(str(payload["amount"]))
        gateway_order_id = int(str(payload["orderId"]))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Notification amount and orderId must be integers",
        )

    if payment.status == PaymentStatus.PAID:
        await db.rollback()
        return NotificationOutcome(status="already_paid", signature_variant=check.variant)

    if amount != payment.amount_cents or str(payload["currency"]) != payment.currency:
        logger.error(
            "Gateway amount mismatch for payment %s: got %s %s, expected %d %s",
            payment.id,
            amount,
            payload["currency"],
            payment.amount_cents,
            payment.currency,
        )
        if payment.status == PaymentStatus.PENDING:
            payment.status = PaymentStatus.FAILED
            payment.payment_metadata = {
                **(payment.payment_metadata or {}),
                "amount_mismatch": {"received": amount, "currency": payload["currency"]},
            }
        await db.commit()
        return NotificationOutcome(status="amount_mismatch", signature_variant=check.variant)

    payment_id = payment.id
    order_id = payment.order_id
    verify_session_id = payment.external_session_id or session_id
    await db.rollback()

    try:
        verification = await gateway.verify_transaction(
            session_id=verify_session_id,
            gateway_order_id=gateway_order_id,
            amount_cents=amount,
            currency=str(payload["currency"]),
        )
    except GatewayError as exc:
        logger.error("Gateway verify failed for session %s: %s", session_id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment verification unavailable",
        )

    if not verification.success:
        result = await db.execute(
            select(Payment).where(Payment.id == payment_id).with_for_update()
        )
        failed = result.scalar_one()
        if failed.status == PaymentStatus.PENDING:
            failed.status = PaymentStatus.FAILED
            failed.payment_metadata = {
                **(failed.payment_metadata or {}),
                "verify_message": verification.message,
            }
        await db.commit()
        logger.warning("Gateway did not confirm session %s: %s", session_id, verification.message)
        return NotificationOutcome(status="verification_failed", signature_variant=check.variant)

    try:
        settlement = await mark_paid(
            db,
            order_id=order_id,
            payment_id=payment_id,
            provider_payload={
                "gateway_order_id": gateway_order_id,
                "method_id": payload.get("methodId"),
                "signature_variant": check.variant,
                "verify_sign_format": verification.sign_format,
            },
        )
    except HTTPException as exc:
        if exc.status_code == status.HTTP_409_CONFLICT:
            logger.error(
                "Payment received for cancelled order (payment %s, session %s)",
                payment_id,
                session_id,
            )
            return NotificationOutcome(status="order_cancelled", signature_variant=check.variant)
        raise

    if settlement.was_already_paid:
        return NotificationOutcome(status="already_paid", signature_variant=check.variant)

    order = settlement.order
    if email_client is not None:
        try:
            await email_client.send_payment_confirmation(
                to_email=order.customer_email,
                order_number=order.order_number,
                total_cents=order.total_cents,
                points_earned=settlement.points_earned,
                customer_name=order.customer_name,
                currency=order.currency,
            )
        except Exception as exc:
            logger.warning(
                "Failed to send payment confirmation for %s: %s", order.order_number, exc
            )

    return NotificationOutcome(status="paid", signature_variant=check.variant)
