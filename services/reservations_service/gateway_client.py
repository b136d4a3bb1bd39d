"""
Card/bank gateway client (Przelewy24 REST v1 compatible).

Provides async methods for:
- Registering a transaction and building the payer redirect URL
- Verifying a settled transaction
- Validating inbound webhook signatures

The gateway's documented signature format has drifted between integrations,
so every signed call is tried with the JSON canonical form first and the
pipe-joined form second, and inbound webhooks are checked against an ordered
list of candidate canonicalizations.
"""

import hashlib
import hmac
import json
import math
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from libs.common.config import Settings, get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)

MIN_API_KEY_LENGTH = 16
REGISTER_PATH = "/api/v1/transaction/register"
VERIFY_PATH = "/api/v1/transaction/verify"


@dataclass
class RegisteredTransaction:
    """Result of transaction/register."""

    token: str
    session_id: str
    sign_format: str


@dataclass
class VerificationResult:
    """Result of transaction/verify."""

    success: bool
    sign_format: Optional[str] = None
    message: Optional[str] = None


@dataclass
class SignatureCheck:
    """Tagged outcome of webhook signature validation.

    ``variant`` names the canonical form that matched (for drift monitoring);
    ``reason`` explains a rejection.
    """

    valid: bool
    variant: Optional[str] = None
    reason: Optional[str] = None
    candidates_tried: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.valid


class GatewayError(Exception):
    """Base exception for gateway API errors."""

    def __init__(
        self, message: str, status_code: int = None, response_data: dict = None
    ):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(message)


def _sha384(data: str) -> str:
    return hashlib.sha384(data.encode("utf-8")).hexdigest()


def _compact_json(payload: dict[str, Any]) -> str:
    # Key order matters: the gateway hashes the exact serialized object.
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _as_number(value: str) -> Optional[int | float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


class GatewayClient:
    """Async client for the payment gateway REST API."""

    def __init__(
        self,
        *,
        pos_id: int,
        api_key: str,
        crc_key: str,
        merchant_id: Optional[int] = None,
        api_url: str = "https://sandbox.przelewy24.pl",
        timeout: float = 30.0,
    ):
        if not pos_id or not api_key or not crc_key:
            raise ValueError("Gateway credentials are required (pos id, api key, crc key)")
        self.pos_id = int(pos_id)
        self.merchant_id = int(merchant_id) if merchant_id else self.pos_id
        self.api_key = api_key
        self.crc_key = crc_key
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

        if len(self.api_key) < MIN_API_KEY_LENGTH:
            logger.warning(
                "Gateway API key looks too short (length=%d); check the report key",
                len(self.api_key),
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayClient":
        return cls(
            pos_id=settings.GATEWAY_POS_ID,
            api_key=settings.GATEWAY_API_KEY,
            crc_key=settings.GATEWAY_CRC_KEY,
            merchant_id=settings.GATEWAY_MERCHANT_ID,
            api_url=settings.GATEWAY_API_URL,
        )

    # =========================================================================
    # Signatures
    # =========================================================================

    def register_signatures(
        self, session_id: str, amount: int, currency: str
    ) -> list[tuple[str, str]]:
        json_sign = _sha384(
            _compact_json(
                {
                    "sessionId": session_id,
                    "merchantId": self.merchant_id,
                    "amount": amount,
                    "currency": currency,
                    "crc": self.crc_key,
                }
            )
        )
        pipe_sign = _sha384(
            f"{session_id}|{self.merchant_id}|{amount}|{currency}|{self.crc_key}"
        )
        return [("json", json_sign), ("pipe", pipe_sign)]

    def verify_signatures(
        self, session_id: str, order_id: int, amount: int, currency: str
    ) -> list[tuple[str, str]]:
        json_sign = _sha384(
            _compact_json(
                {
                    "sessionId": session_id,
                    "orderId": order_id,
                    "amount": amount,
                    "currency": currency,
                    "crc": self.crc_key,
                }
            )
        )
        pipe_sign = _sha384(
            f"{session_id}|{order_id}|{amount}|{currency}|{self.crc_key}"
        )
        return [("json", json_sign), ("pipe", pipe_sign)]

    def webhook_signature_candidates(
        self,
        *,
        merchant_id: str,
        pos_id: str,
        session_id: str,
        amount: str,
        currency: str,
        order_id: str,
    ) -> list[tuple[str, str]]:
        """Known canonical forms of the notification signature, most common first."""
        crc = self.crc_key
        candidates = [
            (
                "pipe_session_order",
                _sha384(f"{session_id}|{order_id}|{amount}|{currency}|{crc}"),
            ),
            (
                "pipe_merchant_pos",
                _sha384(
                    f"{merchant_id}|{pos_id}|{session_id}|{amount}|{currency}|{order_id}|{crc}"
                ),
            ),
        ]

        order_num = _as_number(order_id)
        amount_num = _as_number(amount)
        if order_num is not None and amount_num is not None:
            candidates.append(
                (
                    "json_session_order_num",
                    _sha384(
                        _compact_json(
                            {
                                "sessionId": session_id,
                                "orderId": order_num,
                                "amount": amount_num,
                                "currency": currency,
                                "crc": crc,
                            }
                        )
                    ),
                )
            )
            candidates.append(
                (
                    "json_merchant_pos_num",
                    _sha384(
                        _compact_json(
                            {
                                "merchantId": _as_number(merchant_id),
                                "posId": _as_number(pos_id),
                                "sessionId": session_id,
                                "amount": amount_num,
                                "currency": currency,
                                "orderId": order_num,
                                "crc": crc,
                            }
                        )
                    ),
                )
            )

        candidates.append(
            (
                "json_session_order_str",
                _sha384(
                    _compact_json(
                        {
                            "sessionId": session_id,
                            "orderId": order_id,
                            "amount": amount,
                            "currency": currency,
                            "crc": crc,
                        }
                    )
                ),
            )
        )
        candidates.append(
            (
                "json_merchant_pos_str",
                _sha384(
                    _compact_json(
                        {
                            "merchantId": merchant_id,
                            "posId": pos_id,
                            "sessionId": session_id,
                            "amount": amount,
                            "currency": currency,
                            "orderId": order_id,
                            "crc": crc,
                        }
                    )
                ),
            )
        )
        return candidates

    def verify_webhook_signature(self, payload: dict[str, Any]) -> SignatureCheck:
        """Check a notification against every known canonical form.

        Returns the first matching variant. The merchant and POS ids must
        match ours before any hash is considered.
        """
        merchant_id = str(payload.get("merchantId", ""))
        pos_id = str(payload.get("posId", ""))
        if merchant_id != str(self.merchant_id) or pos_id != str(self.pos_id):
            logger.warning(
                "Gateway webhook merchant/pos mismatch (merchant=%s, pos=%s)",
                merchant_id,
                pos_id,
            )
            return SignatureCheck(valid=False, reason="merchant_mismatch")

        incoming = str(payload.get("sign", "")).lower()
        candidates = self.webhook_signature_candidates(
            merchant_id=merchant_id,
            pos_id=pos_id,
            session_id=str(payload.get("sessionId", "")),
            amount=str(payload.get("amount", "")),
            currency=str(payload.get("currency", "")),
            order_id=str(payload.get("orderId", "")),
        )
        names = [name for name, _ in candidates]

        for name, digest in candidates:
            if hmac.compare_digest(digest.lower().encode(), incoming.encode()):
                return SignatureCheck(valid=True, variant=name, candidates_tried=names)

        logger.warning(
            "Gateway webhook signature mismatch",
            extra={
                "extra_fields": {
                    "session_id": payload.get("sessionId"),
                    "order_id": payload.get("orderId"),
                    "amount": payload.get("amount"),
                    "currency": payload.get("currency"),
                    "received_sign_preview": incoming[:12] + "...",
                    "candidate_previews": {
                        name: digest[:12] + "..." for name, digest in candidates
                    },
                }
            },
        )
        return SignatureCheck(
            valid=False, reason="signature_mismatch", candidates_tried=names
        )

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _request(
        self, method: str, path: str, json_data: dict[str, Any]
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(
                method=method,
                url=f"{self.api_url}{path}",
                auth=(str(self.pos_id), self.api_key),
                headers={"Accept": "application/json"},
                json=json_data,
            )

    async def _signed_call(
        self,
        method: str,
        path: str,
        body: dict[str, Any],
        signatures: list[tuple[str, str]],
    ) -> tuple[dict[str, Any], str]:
        """Try each signature format in order; return (response json, format)."""
        attempts: list[dict[str, Any]] = []
        tried: set[str] = set()

        for sign_format, sign in signatures:
            if sign in tried:
                continue
            tried.add(sign)
            payload = {
                **body,
                "merchantId": self.merchant_id,
                "posId": self.pos_id,
                "sign": sign,
            }
            try:
                response = await self._request(method, path, payload)
            except httpx.HTTPError as exc:
                logger.error("Gateway request to %s failed: %s", path, exc)
                raise GatewayError(f"Gateway unreachable: {exc}") from exc

            if response.is_success:
                if attempts:
                    logger.warning(
                        "Gateway %s succeeded after retry with %s sign format",
                        path,
                        sign_format,
                    )
                return response.json(), sign_format

            attempts.append(
                {
                    "format": sign_format,
                    "status": response.status_code,
                    "error": response.text[:500],
                }
            )

        last = attempts[-1]
        logger.error("Gateway %s rejected all sign formats: %s", path, attempts)
        raise GatewayError(
            message=f"Gateway API error: {last['status']} {last['error']}",
            status_code=last["status"],
            response_data={"attempts": attempts},
        )

    # =========================================================================
    # Transactions
    # =========================================================================

    async def create_transaction(
        self,
        *,
        session_id: str,
        amount_cents: int,
        currency: str,
        description: str,
        email: str,
        client_name: str,
        return_url: str,
        webhook_url: str,
        phone: Optional[str] = None,
        time_limit_minutes: Optional[int] = None,
    ) -> RegisteredTransaction:
        body: dict[str, Any] = {
            "sessionId": session_id,
            "amount": amount_cents,
            "currency": currency,
            "description": description,
            "email": email,
            "client": client_name,
            "country": "PL",
            "language": "pl",
            "urlReturn": return_url,
            "urlStatus": webhook_url,
        }
        if phone:
            body["phone"] = phone
        if time_limit_minutes:
            body["timeLimit"] = time_limit_minutes

        data, sign_format = await self._signed_call(
            "POST",
            REGISTER_PATH,
            body,
            self.register_signatures(session_id, amount_cents, currency),
        )
        token = (data.get("data") or {}).get("token")
        if not token:
            raise GatewayError("Gateway register response has no token", response_data=data)

        logger.info("Registered gateway transaction %s (sign=%s)", session_id, sign_format)
        return RegisteredTransaction(token=token, session_id=session_id, sign_format=sign_format)

    async def verify_transaction(
        self,
        *,
        session_id: str,
        gateway_order_id: int,
        amount_cents: int,
        currency: str,
    ) -> VerificationResult:
        body = {
            "sessionId": session_id,
            "amount": amount_cents,
            "currency": currency,
            "orderId": gateway_order_id,
        }
        data, sign_format = await self._signed_call(
            "PUT",
            VERIFY_PATH,
            body,
            self.verify_signatures(session_id, gateway_order_id, amount_cents, currency),
        )
        result = data.get("data") or {}
        return VerificationResult(
            success=result.get("status") == "success",
            sign_format=sign_format,
            message=result.get("message"),
        )

    def get_payment_url(self, token: str) -> str:
        return f"{self.api_url}/trnRequest/{token}"


def get_gateway_client() -> Optional[GatewayClient]:
    """Return a configured GatewayClient, or None when the gateway is not set up.

    Without a gateway the store accepts manual bank transfers only.
    """
    settings = get_settings()
    try:
        return GatewayClient.from_settings(settings)
    except ValueError:
        return None
