import ssl
import time
from typing import Any, AsyncGenerator, Dict

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.shared.core.config import Settings, get_settings

logger = structlog.get_logger()

SLOW_QUERY_THRESHOLD_SECONDS = 0.2


def build_connect_args(settings: Settings) -> Dict[str, Any]:
    """
    SSL Context: Configurable SSL modes for different environments.
    Options: disable, require, verify-ca, verify-full
    """
    connect_args: Dict[str, Any] = {}
    if "postgresql" not in settings.DATABASE_URL:
        return connect_args

    connect_args["statement_cache_size"] = 0  # Required for Supavisor/pgbouncer
    ssl_mode = settings.DB_SSL_MODE.lower()

    if ssl_mode == "disable":
        logger.warning("database_ssl_disabled", msg="SSL disabled - do not use in production!")
        connect_args["ssl"] = False

    elif ssl_mode == "require":
        ssl_context = ssl.create_default_context()
        if settings.DB_SSL_CA_CERT_PATH:
            ssl_context.load_verify_locations(cafile=settings.DB_SSL_CA_CERT_PATH)
            ssl_context.verify_mode = ssl.CERT_REQUIRED
            logger.info("database_ssl_require_verified", ca_cert=settings.DB_SSL_CA_CERT_PATH)
        elif settings.is_production:
            logger.critical("database_ssl_require_failed_production",
                            msg="SSL CA verification is REQUIRED in production.")
            raise ValueError("DB_SSL_CA_CERT_PATH is mandatory when DB_SSL_MODE=require in production.")
        else:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            logger.warning("database_ssl_require_insecure",
                           msg="SSL enabled but CA verification skipped.")
        connect_args["ssl"] = ssl_context

    elif ssl_mode in ("verify-ca", "verify-full"):
        if not settings.DB_SSL_CA_CERT_PATH:
            raise ValueError(f"DB_SSL_CA_CERT_PATH required for ssl_mode={ssl_mode}")
        ssl_context = ssl.create_default_context(cafile=settings.DB_SSL_CA_CERT_PATH)
        ssl_context.verify_mode = ssl.CERT_REQUIRED
        ssl_context.check_hostname = (ssl_mode == "verify-full")
        connect_args["ssl"] = ssl_context
        logger.info("database_ssl_verified", mode=ssl_mode, ca_cert=settings.DB_SSL_CA_CERT_PATH)

    else:
        raise ValueError(f"Invalid DB_SSL_MODE: {ssl_mode}. Use: disable, require, verify-ca, verify-full")

    return connect_args


def create_engine(settings: Settings | None = None) -> AsyncEngine:
    """
    Build the async engine. Each process (API, worker) owns exactly one and
    disposes it on shutdown.
    """
    settings = settings or get_settings()

    # NullPool for SQLite and tests avoids connections leaking across event loops
    pool_args: Dict[str, Any] = {}
    if settings.TESTING or "sqlite" in settings.DATABASE_URL:
        pool_args["poolclass"] = NullPool
    else:
        pool_args["pool_size"] = settings.DB_POOL_SIZE
        pool_args["max_overflow"] = settings.DB_MAX_OVERFLOW
        pool_args["pool_recycle"] = 300

    engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        connect_args=build_connect_args(settings),
        **pool_args
    )
    _install_slow_query_logging(engine)
    return engine


def _install_slow_query_logging(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def before_cursor_execute(conn, _cursor, _statement, _parameters, _context, _executemany):
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine.sync_engine, "after_cursor_execute")
    def after_cursor_execute(conn, _cursor, statement, parameters, _context, _executemany):
        total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
        if total > SLOW_QUERY_THRESHOLD_SECONDS:
            logger.warning(
                "slow_query_detected",
                duration_seconds=round(total, 3),
                statement=statement[:200] + "..." if len(statement) > 200 else statement,
            )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _session_maker
    if _session_maker is None:
        _session_maker = create_session_maker(get_engine())
    return _session_maker


async def dispose_engine() -> None:
    """Release pooled connections. Called from process shutdown hooks."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_engine_disposed")
    _engine = None
    _session_maker = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that provides a database session."""
    async with get_session_maker()() as session:
        try:
            yield session
        finally:
            await session.close()
