"""ARQ worker running the expiry sweeper."""

from arq import cron
from arq.connections import RedisSettings
from libs.common.config import get_settings
from libs.common.logging import configure_logging, get_logger

logger = get_logger(__name__)


def sweep_minutes(interval: int) -> set[int]:
    """Cron minute set for a sweep every ``interval`` minutes (clamped to 1..60)."""
    interval = max(1, min(60, interval))
    return set(range(0, 60, interval))


async def task_expiry_sweep(ctx: dict):
    from services.reservations_service.tasks import run_expiry_sweep

    logger.info("Running: expiry sweep")
    result = await run_expiry_sweep()
    return result.as_dict()


async def startup(ctx: dict):
    configure_logging()


class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(get_settings().REDIS_URL)

    on_startup = startup

    functions = [
        task_expiry_sweep,
    ]

    cron_jobs = [
        cron(
            task_expiry_sweep,
            minute=sweep_minutes(get_settings().SWEEP_INTERVAL_MINUTES),
            run_at_startup=True,
        ),
    ]
