"""Payment attempts and the gateway status webhook."""

import json
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from libs.common.config import get_settings
from libs.common.emails.client import EmailClient, get_email_client
from libs.common.logging import get_logger
from libs.common.rate_limit import get_client_ip
from libs.db.session import get_async_db
from services.reservations_service.gateway_client import GatewayClient, get_gateway_client
from services.reservations_service.schemas import (
    PaymentResponse,
    StartPaymentRequest,
    StartPaymentResponse,
    WebhookAck,
)
from services.reservations_service.services.payments import (
    handle_gateway_notification,
    start_payment,
)
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)
router = APIRouter(tags=["payments"])


@router.post(
    "/orders/{order_id}/payments",
    response_model=StartPaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment(
    order_id: uuid.UUID,
    payload: StartPaymentRequest,
    db: AsyncSession = Depends(get_async_db),
    gateway: Optional[GatewayClient] = Depends(get_gateway_client),
    email_client: EmailClient = Depends(get_email_client),
):
    started = await start_payment(
        db,
        order_id=order_id,
        provider=payload.provider,
        force_new=payload.force_new,
        gateway=gateway,
        email_client=email_client,
    )
    return StartPaymentResponse(
        payment=PaymentResponse.model_validate(started.payment),
        resumed=started.resumed,
        redirect_url=started.redirect_url,
        manual_transfer=started.manual_transfer,
    )


async def _read_notification(request: Request) -> dict:
    """Notifications arrive as JSON or as a form post, depending on integration."""
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return dict(form)

    raw = await request.body()
    try:
        payload = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed body")
    return payload


@router.post("/payments/gateway/webhook", response_model=WebhookAck)
async def gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    gateway: Optional[GatewayClient] = Depends(get_gateway_client),
    email_client: EmailClient = Depends(get_email_client),
):
    """
    Gateway status notification (no auth; verified by its ``sign`` field).
    """
    allowed_ips = get_settings().gateway_webhook_ips
    if allowed_ips:
        client_ip = get_client_ip(request)
        if client_ip not in allowed_ips:
            logger.warning("Rejected gateway webhook from %s", client_ip)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    payload = await _read_notification(request)
    outcome = await handle_gateway_notification(
        db, raw_payload=payload, gateway=gateway, email_client=email_client
    )
    return WebhookAck(status=outcome.status, signature_variant=outcome.signature_variant)
