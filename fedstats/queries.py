"""Query lifecycle: pending -> running -> completed | failed.

Each submitted analysis runs as its own asyncio task. The manager is the
only writer of query state; a query that reached a terminal state is never
written again.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import pydantic

from fedstats import federations
from fedstats.analysis import AnalysisContext, check_confidence_level, run_analysis
from fedstats.config import QueryConfig, settings
from fedstats.errors import (
    AnalyticsError,
    Cancelled,
    QueryNotFound,
    Timeout,
    ValidationError,
)
from fedstats.models import (
    REQUEST_MODELS,
    AnalyticsQuery,
    AnalyticsQueryListResponse,
    QueryStatus,
)
from fedstats.resolver import resolve

log = logging.getLogger(__name__)

_ALLOWED = {
    QueryStatus.PENDING: {QueryStatus.RUNNING, QueryStatus.FAILED},
    QueryStatus.RUNNING: {QueryStatus.COMPLETED, QueryStatus.FAILED},
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _scope_args(kind: str, request) -> tuple[str, list[str] | None]:
    if kind == "t-test":
        return request.group_by, [request.group_a, request.group_b]
    return request.group_by, request.group_ids


def _variable_label(kind: str, request) -> str:
    if kind == "chi-square":
        return f"{request.variable_1} x {request.variable_2}"
    return request.variable


class QueryManager:
    def __init__(
        self,
        store,
        collector,
        snapshot: Callable[[str], federations.MembershipSnapshot] = federations.snapshot,
        config: QueryConfig | None = None,
    ):
        self._store = store
        self._collector = collector
        self._snapshot = snapshot
        self._config = config or settings.query
        self._tasks: dict[str, tuple[str, asyncio.Task]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def store(self):
        return self._store

    def validate(self, federation_id: str, kind: str, params: dict[str, Any]):
        """Check a request locally; nothing is dispatched if this raises."""
        model = REQUEST_MODELS.get(kind)
        if model is None:
            raise ValidationError(
                f"Unknown analysis type: {kind}. Available: {', '.join(sorted(REQUEST_MODELS))}"
            )
        try:
            request = model.model_validate(params)
        except pydantic.ValidationError as exc:
            first = exc.errors()[0]
            loc = ".".join(str(p) for p in first["loc"])
            raise ValidationError(f"Invalid {kind} request: {loc} {first['msg']}") from exc

        if hasattr(request, "confidence_level"):
            check_confidence_level(request.confidence_level)
        if kind == "t-test" and request.group_a == request.group_b:
            raise ValidationError("group_a and group_b must differ")
        if kind == "chi-square" and request.variable_1 == request.variable_2:
            raise ValidationError("variable_1 and variable_2 must differ")

        group_by, group_ids = _scope_args(kind, request)
        resolve(self._snapshot(federation_id), group_by, group_ids, request.filters)
        return request

    async def submit(self, federation_id: str, kind: str, params: dict[str, Any]) -> AnalyticsQuery:
        """Create a pending query, schedule it and return immediately."""
        request = self.validate(federation_id, kind, params)
        now = _now()
        query = AnalyticsQuery(
            id=str(uuid.uuid4()),
            federation_id=federation_id,
            query_type=kind,
            variable=_variable_label(kind, request),
            group_by=request.group_by,
            parameters=request.model_dump(mode="json"),
            created_at=now,
            updated_at=now,
        )
        await self._store.add(query)
        self._locks[query.id] = asyncio.Lock()

        task = asyncio.create_task(self._execute(query, request), name=f"query-{query.id}")
        self._tasks[query.id] = (federation_id, task)
        task.add_done_callback(lambda _t, qid=query.id: self._forget(qid))
        log.info("Query %s submitted (%s on federation %s)", query.id, kind, federation_id)
        return query

    def _forget(self, query_id: str) -> None:
        self._tasks.pop(query_id, None)
        self._locks.pop(query_id, None)

    async def get_query(self, federation_id: str, query_id: str) -> AnalyticsQuery:
        query = await self._store.get(federation_id, query_id)
        if query is None:
            raise QueryNotFound(f"Query not found: {query_id}")
        return query

    async def list_queries(
        self, federation_id: str, limit: int = 50, offset: int = 0
    ) -> AnalyticsQueryListResponse:
        """Newest first; ``limit`` is clamped to the configured page size."""
        if limit < 1:
            raise ValidationError(f"limit must be positive, got: {limit}")
        if offset < 0:
            raise ValidationError(f"offset must be non-negative, got: {offset}")
        limit = min(limit, self._config.max_page_size)
        queries, total = await self._store.list_queries(federation_id, limit, offset)
        return AnalyticsQueryListResponse(queries=queries, total=total)

    async def wait(
        self, federation_id: str, query_id: str, timeout: float | None = None
    ) -> AnalyticsQuery:
        """Wait up to ``timeout`` seconds for a query to finish; return its state either way."""
        entry = self._tasks.get(query_id)
        if entry is not None:
            await asyncio.wait({entry[1]}, timeout=timeout)
        return await self.get_query(federation_id, query_id)

    async def cancel(self, federation_id: str, query_id: str) -> AnalyticsQuery:
        """Fail a pending or running query with Cancelled and abort its task."""
        query = await self.get_query(federation_id, query_id)
        if query.status.is_terminal:
            return query
        failed = await self._transition(query, QueryStatus.FAILED, error=Cancelled("Query was cancelled"))
        entry = self._tasks.get(query_id)
        if entry is not None:
            entry[1].cancel()
        return failed or await self.get_query(federation_id, query_id)

    async def shutdown(self) -> None:
        entries = list(self._tasks.items())
        for query_id, (federation_id, _task) in entries:
            await self.cancel(federation_id, query_id)
        await asyncio.gather(*(task for _, (_, task) in entries), return_exceptions=True)

    async def _execute(self, query: AnalyticsQuery, request) -> None:
        running = await self._transition(query, QueryStatus.RUNNING)
        if running is None:
            return
        try:
            ctx = AnalysisContext(
                snapshot=self._snapshot(query.federation_id), collector=self._collector
            )
            result = await asyncio.wait_for(
                run_analysis(query.query_type, ctx, request), self._config.timeout_s
            )
        except asyncio.CancelledError:
            await self._transition(running, QueryStatus.FAILED, error=Cancelled("Query was cancelled"))
            raise
        except asyncio.TimeoutError:
            await self._transition(
                running,
                QueryStatus.FAILED,
                error=Timeout(f"Query exceeded {self._config.timeout_s}s"),
            )
        except AnalyticsError as exc:
            await self._transition(running, QueryStatus.FAILED, error=exc)
        except Exception as exc:
            log.exception("Query %s raised an unexpected error", query.id)
            await self._transition(running, QueryStatus.FAILED, error=AnalyticsError(str(exc)))
        else:
            await self._transition(running, QueryStatus.COMPLETED, result=result)

    async def _transition(
        self,
        query: AnalyticsQuery,
        status: QueryStatus,
        *,
        result=None,
        error: AnalyticsError | None = None,
    ) -> AnalyticsQuery | None:
        """Move a query to ``status``; returns None if it already finished."""
        lock = self._locks.setdefault(query.id, asyncio.Lock())
        async with lock:
            current = await self._store.get(query.federation_id, query.id)
            if current is None or current.status.is_terminal:
                return None
            if status not in _ALLOWED[current.status]:
                raise RuntimeError(f"Illegal transition {current.status.value} -> {status.value}")

            now = _now()
            update: dict[str, Any] = {"status": status, "updated_at": now}
            if status.is_terminal:
                update["completed_at"] = now
            if result is not None:
                update["result"] = result
            if error is not None:
                update["error_kind"] = error.kind
                update["error_message"] = error.message
            new = AnalyticsQuery.model_validate({**current.model_dump(), **update})
            await self._store.update(new)

        if error is not None:
            log.warning("Query %s failed: %s: %s", query.id, error.kind, error.message)
        else:
            log.info("Query %s: %s -> %s", query.id, current.status.value, status.value)
        return new
