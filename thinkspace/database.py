from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base
from thinkspace.config import get_settings
from thinkspace.utils.logger import get_logger

logger = get_logger(__name__)

settings = get_settings()


def _engine_kwargs(url: str) -> dict:
    # Pool tuning only applies to server databases
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_pre_ping": True,  # Detect and recycle stale/broken connections
        "pool_recycle": 300,
    }


# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    **_engine_kwargs(settings.database_url),
)

# Create session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

# Base class for models
Base = declarative_base()


# Dependency for FastAPI routes
async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db(bind=None):
    """Create all database tables."""
    # Import models to register them with Base
    from thinkspace.models import request_job, conversation, usage_event, user_account  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("database.ready")
