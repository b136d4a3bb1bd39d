"""FastAPI application for the Reservations Service."""

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from libs.common.logging import get_logger
from libs.common.middleware import add_observability_middleware
from libs.common.rate_limit import limiter, rate_limit_exceeded_handler
from services.reservations_service.routers import (
    admin_router,
    checkout_router,
    orders_router,
    payments_router,
)
from slowapi.errors import RateLimitExceeded

logger = get_logger(__name__)

API_PREFIX = "/api"


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed request bodies are client errors (400), not 422.

    422 is reserved for seat-capacity rejections.
    """
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def create_app() -> FastAPI:
    """Create and configure the Reservations Service FastAPI app."""
    app = FastAPI(
        title="Reservations Service",
        version="0.1.0",
        description="Checkout, seat inventory, loyalty points and payment settlement for trip packages.",
    )

    add_observability_middleware(app)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "reservations"}

    # Public checkout flow
    app.include_router(checkout_router, prefix=API_PREFIX)
    app.include_router(orders_router, prefix=API_PREFIX)
    app.include_router(payments_router, prefix=API_PREFIX)

    # Operator routes (bearer token)
    app.include_router(admin_router, prefix=API_PREFIX)

    return app


app = create_app()
