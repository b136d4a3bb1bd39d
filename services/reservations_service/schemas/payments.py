"""Payment attempt schemas."""

from typing import Optional

from pydantic import BaseModel
from services.reservations_service.models.enums import PaymentProvider
from services.reservations_service.schemas.orders import (
    ManualTransferInstructions,
    PaymentResponse,
)


class StartPaymentRequest(BaseModel):
    provider: PaymentProvider
    # Cancel pending attempts of this provider and start a fresh one.
    force_new: bool = False


class StartPaymentResponse(BaseModel):
    payment: PaymentResponse
    resumed: bool = False
    redirect_url: Optional[str] = None
    manual_transfer: Optional[ManualTransferInstructions] = None


class WebhookAck(BaseModel):
    received: bool = True
    status: str
    signature_variant: Optional[str] = None
