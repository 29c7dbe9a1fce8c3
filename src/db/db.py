# src/db/db.py
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlmodel import SQLModel
from ssl import create_default_context, CERT_REQUIRED
from typing import Optional
import logging

from src.config import settings

logger = logging.getLogger(__name__)

# ============================================
# ASYNC SETUP (for FastAPI + Celery tasks)
# ============================================

_async_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None

def _get_ssl_context():
    """Create SSL context for secure PostgreSQL connections."""
    ssl_context = create_default_context()
    ssl_context.check_hostname = True
    ssl_context.verify_mode = CERT_REQUIRED
    return ssl_context


def _engine_kwargs(database_url: str) -> dict:
    """Pool and driver options. asyncpg-only options are skipped for other drivers."""
    if not database_url.startswith("postgresql+asyncpg"):
        return {"echo": False}

    connect_args = {
        "timeout": 60,
        "command_timeout": 300,
        "server_settings": {
            "tcp_keepalives_idle": "30",
            "tcp_keepalives_interval": "10",
            "tcp_keepalives_count": "3",
        },
    }
    if settings.DB_SSL:
        connect_args["ssl"] = _get_ssl_context()

    return {
        "echo": False,
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 900,
        "pool_timeout": 30,
        "connect_args": connect_args,
    }


def create_engine_for(database_url: str) -> AsyncEngine:
    return create_async_engine(database_url, **_engine_kwargs(database_url))


def get_async_engine() -> AsyncEngine:
    """Get or create the async engine (lazy initialization)."""
    global _async_engine
    if _async_engine is None:
        _async_engine = create_engine_for(settings.DATABASE_URL)
        logger.info("✅ Async engine created")
    return _async_engine


def get_async_session_maker(force_new: bool = False) -> async_sessionmaker[AsyncSession]:
    """
    Get or create the async session maker.
    If `force_new=True`, always create a new engine + session maker.
    This is useful for Celery workers, where every task runs in its own
    event loop and the global engine is bound to a loop that no longer exists.
    """
    global _async_session_maker

    if force_new:
        logger.warning("⚙️  Forcing creation of a fresh async engine and session maker...")
        return async_sessionmaker(
            bind=create_engine_for(settings.DATABASE_URL),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    # Default (re-use global)
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("✅ Async session maker created")

    return _async_session_maker


async def create_tables(engine: Optional[AsyncEngine] = None):
    """Create the record store tables. Local development and tests only."""
    # registers the table models on SQLModel.metadata
    from src.db import models  # noqa: F401

    try:
        engine = engine or get_async_engine()
        async with engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("✅ Database tables created/verified")
    except Exception as e:
        logger.error(f"❌ Failed to create tables: {e}")
        raise

async def dispose_async_engine():
    """Clean up the async engine (call on app shutdown)."""
    global _async_engine, _async_session_maker
    if _async_engine is not None:
        await _async_engine.dispose()
        _async_engine = None
        _async_session_maker = None
        logger.info("✅ Async engine disposed")
