"""Background tasks for the reservations service."""

from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.reservations_service.services.expiry import SweepResult, run_sweep

logger = get_logger(__name__)


async def run_expiry_sweep() -> SweepResult:
    """Reclaim seats, points and tokens held by expired sessions and stale orders."""
    async with AsyncSessionLocal() as db:
        return await run_sweep(db)
