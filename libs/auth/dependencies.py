import hmac
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import ValidationError

from libs.auth.models import AuthUser
from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)
MIN_ADMIN_TOKEN_LENGTH = 32


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _decode_admin_jwt(token: str, secret: str) -> Optional[AuthUser]:
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
        return AuthUser(**payload)
    except (JWTError, ValidationError):
        return None


async def require_admin(
    token: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> AuthUser:
    """
    Authenticate an operator request.

    Accepts either the shared ADMIN_TOKEN (at least 32 characters) or an
    HS256 JWT signed with ADMIN_JWT_SECRET whose role is admin/service_role.
    """
    if token is None or not token.credentials:
        raise _unauthorized("Missing or invalid authorization header")

    settings = get_settings()
    credentials = token.credentials

    admin_token = settings.ADMIN_TOKEN
    if len(admin_token) >= MIN_ADMIN_TOKEN_LENGTH and hmac.compare_digest(
        credentials.encode(), admin_token.encode()
    ):
        return AuthUser(sub="admin-token", role="admin")

    if settings.ADMIN_JWT_SECRET:
        user = _decode_admin_jwt(credentials, settings.ADMIN_JWT_SECRET)
        if user is not None:
            if not user.is_operator:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Admin privileges required",
                )
            return user

    if len(admin_token) < MIN_ADMIN_TOKEN_LENGTH and not settings.ADMIN_JWT_SECRET:
        logger.warning("Admin request rejected: no operator credentials configured")
        raise _unauthorized("Admin token not configured")

    raise _unauthorized("Invalid admin token")
