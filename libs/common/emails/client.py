"""
Email client for the reservations service.

All transactional emails (magic links, order and payment confirmations,
manual transfer instructions) are sent through the Communications Service's
template API. Email is best-effort: every method returns ``False`` instead of
raising, and callers never let a failed send block a committed transaction.

Usage:
    from libs.common.emails.client import get_email_client

    email_client = get_email_client()
    await email_client.send_magic_link(
        to_email="user@example.com",
        link="https://api.example.com/api/checkout/magic-link/abc",
        points_available=42,
        ttl_minutes=15,
    )
"""

from datetime import timedelta
from typing import Any, Optional

import httpx
from jose import jwt
from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger

logger = get_logger(__name__)


class EmailClient:
    """
    HTTP client for the Communications Service template endpoint.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: float = 30.0):
        settings = get_settings()
        self.base_url = (base_url or settings.COMMUNICATIONS_SERVICE_URL).rstrip("/")
        self.timeout = timeout

    def _get_auth_headers(self) -> dict[str, str]:
        """Short-lived service-role JWT, when a signing secret is configured."""
        secret = get_settings().ADMIN_JWT_SECRET
        if not secret:
            return {}
        token = jwt.encode(
            {
                "sub": "reservations",
                "role": "service_role",
                "exp": utc_now() + timedelta(seconds=60),
            },
            secret,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    async def send_template(
        self,
        template_type: str,
        to_email: str,
        template_data: dict[str, Any],
    ) -> bool:
        """
        Send a templated email through the Communications Service.

        Returns:
            True if the email was accepted, False otherwise
        """
        payload = {
            "template_type": template_type,
            "to_email": to_email,
            "template_data": template_data,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/email/template",
                    json=payload,
                    headers=self._get_auth_headers(),
                )
        except httpx.HTTPError as e:
            logger.error("Failed to reach Communications Service for %s: %s", template_type, e)
            return False

        if response.status_code != 200:
            logger.error(
                "Email API returned %d for %s: %s",
                response.status_code,
                template_type,
                response.text,
            )
            return False
        return bool(response.json().get("success", False))

    async def send_magic_link(
        self,
        to_email: str,
        link: str,
        points_available: int,
        ttl_minutes: int,
    ) -> bool:
        return await self.send_template(
            "checkout_magic_link",
            to_email,
            {
                "link": link,
                "points_available": points_available,
                "ttl_minutes": ttl_minutes,
            },
        )

    async def send_order_confirmation(
        self,
        to_email: str,
        customer_name: str,
        order_number: str,
        total_cents: int,
        currency: str,
        items: list[dict[str, Any]],
        points_used: int = 0,
    ) -> bool:
        return await self.send_template(
            "order_confirmation",
            to_email,
            {
                "customer_name": customer_name,
                "order_number": order_number,
                "total_cents": total_cents,
                "currency": currency,
                "items": items,
                "points_used": points_used,
            },
        )

    async def send_payment_confirmation(
        self,
        to_email: str,
        order_number: str,
        total_cents: int,
        points_earned: int,
        customer_name: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> bool:
        return await self.send_template(
            "payment_confirmation",
            to_email,
            {
                "customer_name": customer_name or to_email,
                "order_number": order_number,
                "total_cents": total_cents,
                "currency": currency or get_settings().CURRENCY,
                "points_earned": points_earned,
            },
        )

    async def send_manual_transfer_instructions(
        self,
        to_email: str,
        order_number: str,
        amount_cents: int,
        currency: str,
        bank_account: str,
    ) -> bool:
        return await self.send_template(
            "manual_transfer_instructions",
            to_email,
            {
                "order_number": order_number,
                "amount_cents": amount_cents,
                "currency": currency,
                "bank_account": bank_account,
                "transfer_title": order_number,
            },
        )


_email_client: Optional[EmailClient] = None


def get_email_client() -> EmailClient:
    """Return the process-wide EmailClient (also usable as a FastAPI dependency)."""
    global _email_client
    if _email_client is None:
        _email_client = EmailClient()
    return _email_client
