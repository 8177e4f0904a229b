import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .db import Base
from ..catalog import model as _catalog_model  # noqa: F401  (registers tables)
from ..orders import model as _orders_model  # noqa: F401

_logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _mysql_lock_wait(seconds: int):
    """Connect hook giving every pooled MySQL connection the same row-lock wait.

    InnoDB has no transaction-scoped form of this setting, so it belongs to
    the connection from the moment the pool opens it.
    """

    def _set(dbapi_conn, _record) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute(f"SET SESSION innodb_lock_wait_timeout = {seconds}")
        cursor.close()

    return _set


class Database:
    """Async SQLAlchemy engine plus the unit-of-work factory built on it.

    ``unit_of_work()`` is the only place a transaction is opened. Accessors
    receive the yielded session and never begin, commit or roll back.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        echo: Optional[bool] = None,
        lock_timeout: Optional[float] = None,
        pool_timeout: Optional[float] = None,
    ) -> None:
        self.url = url or settings.DB_URL
        self.lock_timeout = settings.DB_LOCK_TIMEOUT if lock_timeout is None else lock_timeout
        pool_timeout = settings.DB_POOL_TIMEOUT if pool_timeout is None else pool_timeout

        engine_kwargs = {"future": True, "echo": settings.DB_ECHO if echo is None else echo}
        if self.url.startswith("sqlite"):
            # busy timeout: how long a writer waits for the database lock
            engine_kwargs["connect_args"] = {"timeout": self.lock_timeout}
        else:
            engine_kwargs["pool_timeout"] = pool_timeout

        self.engine = create_async_engine(self.url, **engine_kwargs)
        if self.engine.dialect.name == "sqlite":
            sa.event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        elif self.engine.dialect.name in ("mysql", "mariadb"):
            seconds = max(1, int(self.lock_timeout))
            sa.event.listen(self.engine.sync_engine, "connect", _mysql_lock_wait(seconds))
        self.sessions = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        _logger.info("Database schema ready | url=%s", self.engine.url.render_as_string(hide_password=True))

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside one transaction.

        Commits when the block exits normally and rolls back on any exception,
        cancellation included.
        """
        async with self.sessions() as session:
            async with session.begin():
                await self._bound_lock_wait(session)
                yield session

    async def _bound_lock_wait(self, session: AsyncSession) -> None:
        # MySQL gets its bound per connection, see _mysql_lock_wait
        if self.engine.dialect.name == "postgresql":
            millis = int(self.lock_timeout * 1000)
            await session.execute(sa.text(f"SET LOCAL lock_timeout = '{millis}ms'"))
