"""Reservations service routers."""

from services.reservations_service.routers.admin import router as admin_router
from services.reservations_service.routers.checkout import router as checkout_router
from services.reservations_service.routers.orders import router as orders_router
from services.reservations_service.routers.payments import router as payments_router

__all__ = [
    "admin_router",
    "checkout_router",
    "orders_router",
    "payments_router",
]
