import math
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import get_settings
from .models import Base

settings = get_settings()


def lock_timeout_connect_args(database_url: str, timeout: float) -> dict[str, Any]:
    """Driver connect arguments that bound how long a statement waits on a row lock."""
    url = make_url(database_url)
    backend = url.get_backend_name()
    if backend == "mysql":
        # innodb_lock_wait_timeout takes whole seconds only
        return {"init_command": f"SET SESSION innodb_lock_wait_timeout = {max(1, math.ceil(timeout))}"}
    if backend == "postgresql":
        millis = max(1, int(timeout * 1000))
        if url.get_driver_name() == "asyncpg":
            return {"server_settings": {"lock_timeout": str(millis)}}
        return {"options": f"-c lock_timeout={millis}"}
    if backend == "sqlite":
        return {"timeout": timeout}
    return {}


engine = create_async_engine(
    settings.database_url,
    echo=settings.echo_sql,
    pool_pre_ping=True,
    pool_recycle=3600,
    connect_args=lock_timeout_connect_args(settings.database_url, settings.ledger_lock_timeout_seconds),
)

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def create_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
