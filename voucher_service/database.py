import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request
from sqlalchemy import JSON, text
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
import structlog

from voucher_service.config import settings
from voucher_service.errors import StorageUnavailable

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _get_db_url(url: str) -> tuple[str, dict]:
    """Strip sslmode from URL since asyncpg uses connect_args for SSL."""
    if url.startswith("sqlite"):
        # Writers queue on the database lock instead of failing immediately.
        return url, {"timeout": 30}
    connect_args = {}
    if "sslmode=require" in url:
        connect_args["ssl"] = "require"
    url = url.replace("?sslmode=require", "").replace("&sslmode=require", "")
    return url, connect_args


def create_engine_from_settings(url: Optional[str] = None) -> AsyncEngine:
    db_url, connect_args = _get_db_url(url or settings.DATABASE_URL)
    kwargs = dict(echo=settings.DEBUG, connect_args=connect_args, pool_pre_ping=True)
    if not db_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=30,
            pool_recycle=settings.DB_POOL_RECYCLE,
        )
    return create_async_engine(db_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@retry(
    retry=retry_if_exception_type((OperationalError, InterfaceError)),
    stop=stop_after_attempt(settings.DB_CONNECT_ATTEMPTS),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    before_sleep=before_sleep_log(_std_logger, logging.WARNING),
    reraise=True,
)
async def _acquire_connection(session: AsyncSession) -> None:
    await session.connection()


async def get_db(request: Request):
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        try:
            await _acquire_connection(session)
        except DBAPIError as exc:
            logger.error("db_connection_failed", error=str(exc))
            raise StorageUnavailable("Database is unavailable") from exc
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def set_tenant_context(session: AsyncSession, tenant_id: str):
    # set_config() with is_local=true scopes the setting to the current
    # transaction (equivalent to SET LOCAL) and takes bound parameters.
    uuid.UUID(str(tenant_id))  # raises ValueError if not a valid UUID
    if session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT set_config('app.current_tenant_id', :tid, true)"),
        {"tid": str(tenant_id)},
    )


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("db_connected", dialect=engine.dialect.name)


async def close_db(engine: AsyncEngine):
    await engine.dispose()
    logger.info("db_disconnected")


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


async def insert_if_absent(session: AsyncSession, model, values: dict, index_elements: list[str]) -> None:
    """INSERT ... ON CONFLICT DO NOTHING on the dialects that support it."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values)
    else:
        raise NotImplementedError(f"insert_if_absent is not supported on {dialect}")
    await session.execute(stmt.on_conflict_do_nothing(index_elements=index_elements))
