# dbstep/connection.py
"""
Async connection handle used by the SQL step.

The step only needs three coroutines from a connection: ``connect()``,
``query(sql)`` and ``close()``. :class:`AsyncConnection` provides them on top
of the blocking DB-API drivers wrapped by :class:`~dbstep.database.Database`:
it keeps a small pool of driver connections and runs every blocking call in
a thread pool, so many statements can be outstanding at once while the
event loop stays single threaded.
"""

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .database import Database
from .defaults import settings
from .exceptions import ExecutionError

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """
    Outcome of one SQL batch.

    Attributes:
        recordsets: One list of row dicts per result set returned.
        rows_affected: One count per result set or DML statement.
    """
    recordsets: List[List[Dict[str, Any]]] = field(default_factory=list)
    rows_affected: List[int] = field(default_factory=list)

    @property
    def recordset(self) -> List[Dict[str, Any]]:
        """The first result set, or an empty list."""
        return self.recordsets[0] if self.recordsets else []


def read_results(cursor) -> QueryResult:
    """Collect every result set and row count from an executed DB-API cursor."""
    result = QueryResult()
    while True:
        if cursor.description:
            columns = [desc[0] for desc in cursor.description]
            rows = [dict(zip(columns, row)) for row in cursor.fetchall()]
            result.recordsets.append(rows)
            result.rows_affected.append(len(rows))
        else:
            count = cursor.rowcount
            result.rows_affected.append(count if count and count > 0 else 0)
        # sqlite3 cursors have no nextset()
        nextset = getattr(cursor, 'nextset', None)
        if nextset is None or not nextset():
            break
    return result


class AsyncConnection:
    """
    Pooled async wrapper around blocking database connections.

    Example
    -------
    ::

        conn = AsyncConnection.create('sqlserver', host='db01', database='ba_sing_se',
                                      user='dai_li', password='...')
        async with conn:
            result = await conn.query("SELECT id, name FROM earth_kingdom")
            print(result.recordset)
    """

    def __init__(self, connector: Callable[[], Any], pool_size: Optional[int] = None, name: Optional[str] = None):
        """
        Args:
            connector: Zero-argument callable returning a new DB-API connection
                (or :class:`Database`). Called once per pooled connection.
            pool_size: Number of driver connections to open. Defaults to the
                ``pool_size`` setting.
            name: Label used in log messages.
        """
        self._connector = connector
        self.pool_size = max(1, int(pool_size or settings.get('pool_size', 4)))
        self.name = name or 'dbstep'
        self._connections: List[Any] = []
        self._pool: Optional[asyncio.Queue] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def create(cls, db_type: str, driver: Optional[str] = None, pool_size: Optional[int] = None,
               name: Optional[str] = None, **params) -> 'AsyncConnection':
        """Build a connection whose pool members come from :meth:`Database.create`."""
        connector = functools.partial(Database.create, db_type, driver=driver, **params)
        return cls(connector, pool_size=pool_size, name=name or params.get('database'))

    def __repr__(self) -> str:
        state = 'open' if self.connected else 'closed'
        return f"AsyncConnection({self.name!r}, pool_size={self.pool_size}, {state})"

    @property
    def connected(self) -> bool:
        return self._executor is not None

    def _run_in_executor(self, func, *args):
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._executor, func, *args)

    async def connect(self) -> 'AsyncConnection':
        """Open the pool. Calling connect() on an open connection does nothing."""
        if self.connected:
            return self

        self._executor = ThreadPoolExecutor(max_workers=self.pool_size, thread_name_prefix=self.name)
        self._pool = asyncio.Queue()
        try:
            for _ in range(self.pool_size):
                conn = await self._run_in_executor(self._connector)
                self._connections.append(conn)
                self._pool.put_nowait(conn)
        except Exception as e:
            logger.error(f"[{self.name}] Failed to open connection: {e}")
            await self.close()
            raise
        logger.info(f"[{self.name}] Connection pool ready (size: {self.pool_size})")
        return self

    @staticmethod
    def _execute(conn, sql: str) -> QueryResult:
        cursor = conn.cursor()
        try:
            cursor.execute(sql)
            result = read_results(cursor)
            conn.commit()
            return result
        except Exception:
            try:
                conn.rollback()
            except Exception as e:
                logger.warning(f"Rollback failed: {e}")
            raise
        finally:
            cursor.close()

    async def query(self, sql: str) -> QueryResult:
        """
        Execute one SQL batch on a pooled connection and commit it.

        Raises:
            ExecutionError: If the pool is not open or the database rejects the SQL.
        """
        if not self.connected:
            raise ExecutionError("Connection is not open", sql=sql)

        conn = await self._pool.get()
        try:
            return await self._run_in_executor(self._execute, conn, sql)
        except Exception as e:
            raise ExecutionError(str(e), sql=sql) from e
        finally:
            self._pool.put_nowait(conn)

    async def close(self) -> None:
        """Close every pooled connection. Safe to call more than once."""
        if not self.connected:
            return

        for conn in self._connections:
            try:
                await self._run_in_executor(conn.close)
            except Exception as e:
                logger.warning(f"[{self.name}] Failed to close connection: {e}")
        self._executor.shutdown(wait=True)
        self._connections = []
        self._pool = None
        self._executor = None
        logger.debug(f"[{self.name}] Connection pool closed")

    async def __aenter__(self):
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
