"""
Persistence backends for the crawler: SQLite (aiosqlite) and PostgreSQL (asyncpg).

Callers never hold a connection across operations. Each queue mutation,
checkpoint write or page update opens its own unit of work with
``create_connection(config)`` and writes queries with ``?`` placeholders,
passed through ``sql(config, query)`` so they also run on PostgreSQL.
"""

from __future__ import annotations
import json
import re
import zlib
import base64
from abc import ABC, abstractmethod
from typing import Optional, Tuple, List, Dict, Any
from dataclasses import dataclass

import aiosqlite
import asyncpg


@dataclass
class DatabaseConfig:
    """Where crawl data for a project lives."""
    backend: str = "sqlite"  # "sqlite" or "postgresql"

    # SQLite: one file per crawled site
    sqlite_path: str = ""
    sqlite_busy_timeout: float = 30.0

    # PostgreSQL: shared server, every table keyed by project_id
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "seo_crawler"
    postgres_user: str = "crawler_user"
    postgres_password: str = ""
    postgres_pool_size: int = 10
    postgres_max_queries: int = 50000
    postgres_max_inactive_connection_lifetime: float = 300.0

    @property
    def is_postgres(self) -> bool:
        return self.backend == "postgresql"

    def pool_key(self) -> Tuple:
        return (self.postgres_host, self.postgres_port, self.postgres_database, self.postgres_user)


_PLACEHOLDER = re.compile(r"\?")


def sql(config: DatabaseConfig, query: str) -> str:
    """Rewrite ``?`` placeholders as ``$1, $2, ...`` for asyncpg."""
    if not config.is_postgres:
        return query
    counter = iter(range(1, 10_000))
    return _PLACEHOLDER.sub(lambda _: f"${next(counter)}", query)


class DatabaseConnection(ABC):
    """One unit of work against either backend.

    Rows come back as tuples (aiosqlite) or ``asyncpg.Record`` objects, both
    indexable by position.
    """

    conn: Any = None

    def _require(self):
        if not self.conn:
            raise RuntimeError("Connection not established")
        return self.conn

    @abstractmethod
    async def execute(self, query: str, *args) -> Any: ...

    @abstractmethod
    async def executemany(self, query: str, args_list: List[Tuple]) -> Any: ...

    @abstractmethod
    async def fetchone(self, query: str, *args) -> Optional[Tuple]: ...

    @abstractmethod
    async def fetchall(self, query: str, *args) -> List[Tuple]: ...

    @abstractmethod
    async def begin(self) -> None:
        """Open a write transaction; ``commit`` or ``rollback`` ends it."""

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class SQLiteConnection(DatabaseConnection):

    def __init__(self, db_path: str, busy_timeout: float = 30.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self.conn: Optional[aiosqlite.Connection] = None

    async def __aenter__(self):
        self.conn = await aiosqlite.connect(self.db_path, timeout=self.busy_timeout)
        for pragma in (
            f"PRAGMA busy_timeout={int(self.busy_timeout * 1000)}",
            "PRAGMA journal_mode=WAL",
            "PRAGMA synchronous=NORMAL",
            "PRAGMA cache_size=10000",
            "PRAGMA temp_store=MEMORY",
            "PRAGMA foreign_keys=ON",
        ):
            await self.conn.execute(pragma)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.conn is None:
            return
        if exc_type is not None and self.conn.in_transaction:
            await self.conn.rollback()
        await self.close()

    async def execute(self, query: str, *args) -> aiosqlite.Cursor:
        return await self._require().execute(query, args)

    async def executemany(self, query: str, args_list: List[Tuple]) -> aiosqlite.Cursor:
        return await self._require().executemany(query, args_list)

    async def fetchone(self, query: str, *args) -> Optional[Tuple]:
        cursor = await self._require().execute(query, args)
        return await cursor.fetchone()

    async def fetchall(self, query: str, *args) -> List[Tuple]:
        cursor = await self._require().execute(query, args)
        return await cursor.fetchall()

    async def begin(self) -> None:
        # IMMEDIATE takes the write lock up front so concurrent dequeuers wait
        # on busy_timeout instead of failing to upgrade a read snapshot.
        await self._require().execute("BEGIN IMMEDIATE")

    async def commit(self) -> None:
        if self.conn:
            await self.conn.commit()

    async def rollback(self) -> None:
        if self.conn:
            await self.conn.rollback()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None


class PostgreSQLConnection(DatabaseConnection):
    """A connection borrowed from an asyncpg pool for one unit of work."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool
        self.conn: Optional[asyncpg.Connection] = None
        self._transaction = None

    async def __aenter__(self):
        self.conn = await self.pool.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._transaction is not None and exc_type is not None:
            await self._transaction.rollback()
        self._transaction = None
        await self.close()

    async def execute(self, query: str, *args) -> str:
        return await self._require().execute(query, *args)

    async def executemany(self, query: str, args_list: List[Tuple]) -> None:
        return await self._require().executemany(query, args_list)

    async def fetchone(self, query: str, *args) -> Optional[Tuple]:
        return await self._require().fetchrow(query, *args)

    async def fetchall(self, query: str, *args) -> List[Tuple]:
        return await self._require().fetch(query, *args)

    async def begin(self) -> None:
        self._transaction = self._require().transaction()
        await self._transaction.start()

    async def commit(self) -> None:
        # Outside begin() asyncpg has already committed each statement
        if self._transaction is not None:
            await self._transaction.commit()
            self._transaction = None

    async def rollback(self) -> None:
        if self._transaction is not None:
            await self._transaction.rollback()
            self._transaction = None

    async def close(self) -> None:
        if self.conn is not None:
            await self.pool.release(self.conn)
            self.conn = None


class DatabasePool:
    """asyncpg pool for one PostgreSQL server, created on first use."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> asyncpg.Pool:
        if self.pool is None:
            self.pool = await asyncpg.create_pool(
                host=self.config.postgres_host,
                port=self.config.postgres_port,
                database=self.config.postgres_database,
                user=self.config.postgres_user,
                password=self.config.postgres_password,
                min_size=1,
                max_size=self.config.postgres_pool_size,
                max_queries=self.config.postgres_max_queries,
                max_inactive_connection_lifetime=self.config.postgres_max_inactive_connection_lifetime
            )
        return self.pool

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None


class PooledConnection:
    """Async context manager yielding a PostgreSQLConnection from a DatabasePool."""

    def __init__(self, pool: DatabasePool):
        self.pool = pool
        self.conn: Optional[PostgreSQLConnection] = None

    async def __aenter__(self) -> PostgreSQLConnection:
        self.conn = PostgreSQLConnection(await self.pool.initialize())
        return await self.conn.__aenter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.conn:
            await self.conn.__aexit__(exc_type, exc_val, exc_tb)


# Page HTML and response headers are stored zlib-compressed and base64-encoded
def compress_html(html: str) -> bytes:
    return base64.b64encode(zlib.compress(html.encode("utf-8"), level=9))


def decompress_html(encoded: bytes) -> str:
    if encoded is None:
        return ""
    try:
        return zlib.decompress(base64.b64decode(encoded)).decode("utf-8")
    except (zlib.error, ValueError, UnicodeDecodeError):
        return ""


def compress_headers(headers: dict) -> bytes:
    return base64.b64encode(zlib.compress(json.dumps(headers, ensure_ascii=False).encode("utf-8"), level=9))


def decompress_headers(encoded: bytes) -> Dict[str, str]:
    if not encoded:
        return {}
    try:
        return json.loads(zlib.decompress(base64.b64decode(encoded)).decode("utf-8"))
    except (zlib.error, ValueError, UnicodeDecodeError):
        return {}


_global_config: Optional[DatabaseConfig] = None
_pools: Dict[Tuple, DatabasePool] = {}


def _get_pool(config: DatabaseConfig) -> DatabasePool:
    key = config.pool_key()
    if key not in _pools:
        _pools[key] = DatabasePool(config)
    return _pools[key]


def set_global_config(config: DatabaseConfig):
    """Set the configuration used when an operation is called without one."""
    global _global_config
    _global_config = config


def get_global_config() -> Optional[DatabaseConfig]:
    return _global_config


def create_connection(config: DatabaseConfig = None):
    """Open one unit of work: a fresh SQLite connection or a pooled asyncpg one.

    Returns an async context manager; leaving it with an exception rolls back
    any transaction opened with ``begin()``.
    """
    config = config or _global_config
    if not config:
        raise RuntimeError("Global database configuration not set")
    if config.backend == "sqlite":
        return SQLiteConnection(config.sqlite_path, config.sqlite_busy_timeout)
    if config.backend == "postgresql":
        return PooledConnection(_get_pool(config))
    raise ValueError(f"Unsupported database backend: {config.backend}")


async def close_pools():
    """Close every PostgreSQL pool opened by this process."""
    for pool in list(_pools.values()):
        await pool.close()
    _pools.clear()
