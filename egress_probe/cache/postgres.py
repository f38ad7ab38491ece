"""PostgreSQL-backed decision cache using a psycopg connection pool.

Each cache key is one row holding the record as JSONB. Writes are upserts, so
concurrent invocations simply overwrite each other (last writer wins), which
the engine tolerates.
"""

import logging
import math
from contextlib import contextmanager
from typing import Any, Dict, Generator, Mapping, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from egress_probe.cache.base import CacheError
from egress_probe.logging_utils import perf

LOGGER = logging.getLogger(__name__)

DEFAULT_TABLE = "probe_decisions"
DEFAULT_TIMEOUT_S = 5.0

CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS {table} (
        cache_key TEXT PRIMARY KEY,
        value JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
"""

SELECT_SQL = "SELECT value FROM {table} WHERE cache_key = %(key)s"

UPSERT_SQL = """
    INSERT INTO {table} (cache_key, value, updated_at)
    VALUES (%(key)s, %(value)s, now())
    ON CONFLICT (cache_key)
    DO UPDATE SET
        value = EXCLUDED.value,
        updated_at = EXCLUDED.updated_at
"""


class PostgresCache:
    """Thin decision-cache adapter over a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        table: str = DEFAULT_TABLE,
        min_size: int = 1,
        max_size: int = 2,
        connection_config: Optional[Dict[str, Any]] = None,
        timeout: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        if min_size < 1 or max_size < 1 or min_size > max_size:
            raise ValueError("Pool size must be positive and min_size <= max_size.")
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid cache table name: {table!r}")
        if timeout <= 0:
            raise ValueError("timeout must be positive.")

        self._table = table
        self._schema_ready = False
        # an unreachable server must fail fast; the engine then runs uncached
        kwargs = {"connect_timeout": max(1, math.ceil(timeout))}
        kwargs.update(connection_config or {})
        self._pool = ConnectionPool(
            conninfo=dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs=kwargs,
        )
        LOGGER.debug(
            "Initialized postgres decision cache table=%s pool min=%s max=%s timeout=%ss",
            table,
            min_size,
            max_size,
            timeout,
        )

    @contextmanager
    def _transaction(self) -> Generator[psycopg.Connection, None, None]:
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    yield conn
        except psycopg.Error as exc:
            raise CacheError(f"postgres cache unavailable: {exc}") from exc

    def ensure_schema(self) -> None:
        """Create the cache table when missing (idempotent)."""
        if self._schema_ready:
            return
        with self._transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(CREATE_TABLE_SQL.format(table=self._table))
        self._schema_ready = True

    @perf("cache.postgres.get", tags={"component": "cache"}, level=logging.DEBUG)
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        self.ensure_schema()
        with self._transaction() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(SELECT_SQL.format(table=self._table), {"key": key})
                row = cur.fetchone()
        if not row:
            return None
        value = row.get("value")
        return value if isinstance(value, dict) else None

    @perf("cache.postgres.set", tags={"component": "cache"}, level=logging.DEBUG)
    def set(self, key: str, value: Dict[str, Any]) -> None:
        self.ensure_schema()
        with self._transaction() as conn:
            with conn.cursor() as cur:
                LOGGER.debug("Upserting cache entry %s", key)
                cur.execute(
                    UPSERT_SQL.format(table=self._table),
                    {"key": key, "value": Jsonb(value)},
                )

    @perf("cache.postgres.set_many", tags={"component": "cache"}, level=logging.DEBUG)
    def set_many(self, items: Mapping[str, Dict[str, Any]]) -> None:
        """Upsert several entries in one transaction."""
        self.ensure_schema()
        with self._transaction() as conn:
            with conn.cursor() as cur:
                LOGGER.debug("Upserting %d cache entries", len(items))
                for key, value in items.items():
                    cur.execute(
                        UPSERT_SQL.format(table=self._table),
                        {"key": key, "value": Jsonb(value)},
                    )

    def close(self) -> None:
        """Close the underlying connection pool."""
        LOGGER.debug("Closing postgres decision cache pool")
        self._pool.close()

    def __enter__(self) -> "PostgresCache":
        return self

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()
