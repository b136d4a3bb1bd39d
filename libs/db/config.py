from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from libs.common.config import Settings, get_settings


def build_engine(settings: Settings, **overrides) -> AsyncEngine:
    """Async engine with the pool sized from settings; SQL echo only when local."""
    options = {
        "echo": settings.ENVIRONMENT == "local",
        "pool_pre_ping": True,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": settings.DB_POOL_RECYCLE,
    }
    options.update(overrides)
    return create_async_engine(settings.DATABASE_URL, **options)


engine = build_engine(get_settings())

# Shared by request handlers (via get_async_db) and the background sweeper.
# Objects stay readable after commit so services can return what they wrote.
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)
