"""Async HTTP client for the federated analytics endpoints.

Every public method returns a Result: either the parsed response or an
AnalyticsError describing what went wrong. Nothing raises out of a call.
Bad parameters are rejected locally and never sent.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import httpx
import pydantic

from fedstats.errors import (
    AnalyticsError,
    EmptyResponse,
    Timeout,
    TransportError,
    ValidationError,
    error_from_kind,
    error_from_status,
)
from fedstats.models import (
    GROUP_BY_CHOICES,
    AnalyticsFilter,
    AnalyticsQuery,
    AnalyticsQueryListResponse,
    AnovaRequest,
    AnovaResult,
    ChiSquareRequest,
    ChiSquareResult,
    DescriptiveRequest,
    DescriptiveResult,
    QueryHandle,
    QueryStatus,
    TTestRequest,
    TTestResult,
)

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: AnalyticsError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: AnalyticsError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value


def _error_from_response(resp: httpx.Response) -> AnalyticsError:
    if not resp.content:
        return EmptyResponse(f"HTTP {resp.status_code} with empty body")
    try:
        error = resp.json()["error"]
        return error_from_kind(error["kind"], error.get("message", ""))
    except (ValueError, KeyError, TypeError):
        return error_from_status(resp.status_code, resp.text)


class FederatedAnalyticsClient:
    """Client for federated analytics queries against one federation."""

    def __init__(
        self,
        base_url: str,
        federation_id: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        token: str | None = None,
        poll_interval: float = 0.5,
        poll_timeout: float = 300.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.federation_id = federation_id
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/federations/{self.federation_id}/analytics{path}"

    async def _call(self, method: str, path: str, model: type, what: str, **kwargs) -> Result:
        try:
            resp = await self._client.request(method, self._url(path), **kwargs)
        except httpx.HTTPError as exc:
            log.exception("%s error", what)
            return Result.failure(TransportError(f"{what} failed: {exc}"))

        if resp.status_code >= 400:
            return Result.failure(_error_from_response(resp))
        if not resp.content:
            return Result.failure(EmptyResponse(f"Empty {what} response"))
        try:
            payload = resp.json()
            if resp.status_code == 202:
                return Result.success(QueryHandle.model_validate(payload))
            return Result.success(model.model_validate(payload))
        except (ValueError, pydantic.ValidationError) as exc:
            log.exception("%s returned an unreadable body", what)
            return Result.failure(TransportError(f"Malformed {what} response: {exc}"))

    async def _run(self, path: str, request: pydantic.BaseModel, model: type, what: str) -> Result:
        result = await self._call(
            "POST", path, model, what, json=request.model_dump(mode="json", exclude_none=True)
        )
        if not result.ok or not isinstance(result.value, QueryHandle):
            return result
        return await self._poll(result.value.query_id, what)

    async def _poll(self, query_id: str, what: str) -> Result:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.poll_timeout
        while True:
            polled = await self.get_query(query_id)
            if not polled.ok:
                return polled
            query = polled.value
            if query.status == QueryStatus.COMPLETED:
                return Result.success(query.result)
            if query.status == QueryStatus.FAILED:
                return Result.failure(error_from_kind(query.error_kind, query.error_message or ""))
            if loop.time() >= deadline:
                return Result.failure(Timeout(f"{what} still {query.status.value} after {self.poll_timeout}s"))
            await asyncio.sleep(self.poll_interval)

    @staticmethod
    def _build(model: type, **fields: Any):
        try:
            request = model(**fields)
        except pydantic.ValidationError as exc:
            first = exc.errors()[0]
            return None, ValidationError(f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}")
        level = getattr(request, "confidence_level", 0.95)
        if not 0.0 < level < 1.0:
            return None, ValidationError(f"confidence_level must be strictly between 0 and 1, got: {level}")
        if request.group_by not in GROUP_BY_CHOICES:
            return None, ValidationError(f"group_by must be one of {', '.join(GROUP_BY_CHOICES)}")
        return request, None

    # ── Statistical analyses ──

    async def descriptive(
        self,
        variable: str,
        group_by: str = "device_group",
        group_ids: list[str] | None = None,
        include_percentiles: bool = True,
        filters: AnalyticsFilter | None = None,
    ) -> Result[DescriptiveResult]:
        request, error = self._build(
            DescriptiveRequest,
            variable=variable,
            group_by=group_by,
            group_ids=group_ids,
            include_percentiles=include_percentiles,
            filters=filters,
        )
        if error:
            return Result.failure(error)
        return await self._run("/descriptive", request, DescriptiveResult, "Descriptive analytics")

    async def t_test(
        self,
        variable: str,
        group_a: str,
        group_b: str,
        confidence_level: float = 0.95,
        filters: AnalyticsFilter | None = None,
        group_by: str = "device_group",
    ) -> Result[TTestResult]:
        request, error = self._build(
            TTestRequest,
            variable=variable,
            group_a=group_a,
            group_b=group_b,
            group_by=group_by,
            confidence_level=confidence_level,
            filters=filters,
        )
        if error:
            return Result.failure(error)
        return await self._run("/ttest", request, TTestResult, "T-test")

    async def chi_square(
        self,
        variable_1: str,
        variable_2: str,
        group_ids: list[str] | None = None,
        confidence_level: float = 0.95,
        filters: AnalyticsFilter | None = None,
        group_by: str = "device_group",
    ) -> Result[ChiSquareResult]:
        request, error = self._build(
            ChiSquareRequest,
            variable_1=variable_1,
            variable_2=variable_2,
            group_by=group_by,
            group_ids=group_ids,
            confidence_level=confidence_level,
            filters=filters,
        )
        if error:
            return Result.failure(error)
        return await self._run("/chisquare", request, ChiSquareResult, "Chi-square test")

    async def anova(
        self,
        variable: str,
        group_by: str = "device_group",
        group_ids: list[str] | None = None,
        confidence_level: float = 0.95,
        post_hoc: bool = True,
        filters: AnalyticsFilter | None = None,
    ) -> Result[AnovaResult]:
        request, error = self._build(
            AnovaRequest,
            variable=variable,
            group_by=group_by,
            group_ids=group_ids,
            confidence_level=confidence_level,
            post_hoc=post_hoc,
            filters=filters,
        )
        if error:
            return Result.failure(error)
        return await self._run("/anova", request, AnovaResult, "ANOVA")

    # ── Query history ──

    async def list_queries(self, limit: int = 50, offset: int = 0) -> Result[AnalyticsQueryListResponse]:
        return await self._call(
            "GET",
            "/queries",
            AnalyticsQueryListResponse,
            "List queries",
            params={"limit": limit, "offset": offset},
        )

    async def get_query(self, query_id: str) -> Result[AnalyticsQuery]:
        return await self._call("GET", f"/queries/{query_id}", AnalyticsQuery, "Get query")

    async def cancel_query(self, query_id: str) -> Result[AnalyticsQuery]:
        return await self._call("DELETE", f"/queries/{query_id}", AnalyticsQuery, "Cancel query")
