"""Query repository, keyed by query id.

Only the QueryManager writes here. Two backends: an in-process dict for a
single server, and PostgreSQL (psycopg pool) when history must survive a
restart.
"""

import itertools
import logging
from datetime import datetime, timezone

from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from fedstats.config import StoreConfig, settings
from fedstats.errors import Cancelled
from fedstats.models import AnalyticsQuery, QueryStatus

log = logging.getLogger(__name__)


class InMemoryQueryStore:
    backend = "memory"

    def __init__(self):
        self._queries: dict[str, tuple[int, AnalyticsQuery]] = {}
        self._seq = itertools.count()

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def add(self, query: AnalyticsQuery) -> None:
        self._queries[query.id] = (next(self._seq), query)

    async def update(self, query: AnalyticsQuery) -> None:
        seq, _ = self._queries[query.id]
        self._queries[query.id] = (seq, query)

    async def get(self, federation_id: str, query_id: str) -> AnalyticsQuery | None:
        entry = self._queries.get(query_id)
        if entry is None or entry[1].federation_id != federation_id:
            return None
        return entry[1]

    async def list_queries(
        self, federation_id: str, limit: int, offset: int
    ) -> tuple[list[AnalyticsQuery], int]:
        entries = [e for e in self._queries.values() if e[1].federation_id == federation_id]
        # Newest first; insertion order breaks created_at ties
        entries.sort(key=lambda e: (e[1].created_at, e[0]), reverse=True)
        return [q for _, q in entries[offset:offset + limit]], len(entries)


def fail_abandoned(query: AnalyticsQuery, now: datetime) -> AnalyticsQuery:
    """Terminal copy of a query whose server stopped before it finished."""
    return query.model_copy(
        update={
            "status": QueryStatus.FAILED,
            "error_kind": Cancelled.kind,
            "error_message": "server restarted",
            "updated_at": now,
            "completed_at": now,
        }
    )


_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS analytics_queries (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        federation_id TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        body JSONB NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_analytics_queries_history
        ON analytics_queries (federation_id, created_at DESC, seq DESC);
"""


class PostgresQueryStore:
    backend = "postgres"

    def __init__(self, config: StoreConfig | None = None):
        self._config = config or settings.store
        self._pool: AsyncConnectionPool | None = None

    async def open(self) -> None:
        self._pool = AsyncConnectionPool(
            conninfo=self._config.conninfo,
            min_size=self._config.min_size,
            max_size=self._config.max_size,
            open=False,
        )
        await self._pool.open()
        async with self._pool.connection() as conn:
            await conn.execute(_SCHEMA_SQL)
            abandoned = await self._fail_unfinished(conn)
        if abandoned:
            log.warning("Failed %d queries left unfinished by a previous run", abandoned)
        log.info("Query store pool opened")

    async def _fail_unfinished(self, conn) -> int:
        # Leftovers from a previous process; no task owns them any more
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                "SELECT body FROM analytics_queries WHERE status IN ('pending', 'running')"
            )
            rows = await cur.fetchall()
        now = datetime.now(timezone.utc)
        for row in rows:
            query = fail_abandoned(AnalyticsQuery.model_validate(row["body"]), now)
            await conn.execute(
                "UPDATE analytics_queries SET status = %s, body = %s::jsonb "
                "WHERE id = %s AND status NOT IN ('completed', 'failed')",
                (query.status.value, query.model_dump_json(), query.id),
            )
        return len(rows)

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            log.info("Query store pool closed")

    def _get_pool(self) -> AsyncConnectionPool:
        if self._pool is None:
            raise RuntimeError("Query store pool is not initialized")
        return self._pool

    async def add(self, query: AnalyticsQuery) -> None:
        async with self._get_pool().connection() as conn:
            await conn.execute(
                "INSERT INTO analytics_queries (id, federation_id, status, created_at, body) "
                "VALUES (%s, %s, %s, %s, %s::jsonb)",
                (
                    query.id,
                    query.federation_id,
                    query.status.value,
                    query.created_at,
                    query.model_dump_json(),
                ),
            )

    async def update(self, query: AnalyticsQuery) -> None:
        # Terminal rows are never rewritten
        async with self._get_pool().connection() as conn:
            await conn.execute(
                "UPDATE analytics_queries SET status = %s, body = %s::jsonb "
                "WHERE id = %s AND status NOT IN ('completed', 'failed')",
                (query.status.value, query.model_dump_json(), query.id),
            )

    async def get(self, federation_id: str, query_id: str) -> AnalyticsQuery | None:
        async with self._get_pool().connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    "SELECT body FROM analytics_queries WHERE id = %s AND federation_id = %s",
                    (query_id, federation_id),
                )
                row = await cur.fetchone()
                return AnalyticsQuery.model_validate(row["body"]) if row else None

    async def list_queries(
        self, federation_id: str, limit: int, offset: int
    ) -> tuple[list[AnalyticsQuery], int]:
        async with self._get_pool().connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    "SELECT body FROM analytics_queries WHERE federation_id = %s "
                    "ORDER BY created_at DESC, seq DESC LIMIT %s OFFSET %s",
                    (federation_id, limit, offset),
                )
                rows = await cur.fetchall()
                await cur.execute(
                    "SELECT COUNT(*) AS n FROM analytics_queries WHERE federation_id = %s",
                    (federation_id,),
                )
                count = await cur.fetchone()
        return [AnalyticsQuery.model_validate(r["body"]) for r in rows], count["n"]


def create_store(config: StoreConfig | None = None):
    config = config or settings.store
    if config.backend == "postgres":
        return PostgresQueryStore(config)
    return InMemoryQueryStore()
