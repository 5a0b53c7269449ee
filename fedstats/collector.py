"""Fetches per-site aggregates from federation members in parallel.

Each site gets one request per query, bounded by a concurrency limit shared
by every query running on this collector. A site that fails or times out is
retried once on transient transport failure and otherwise left out; the
collection as a whole fails only when too large a fraction of sites is
missing.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
import pydantic

from fedstats.analysis.aggregates import SiteAggregate
from fedstats.config import CollectorConfig, settings
from fedstats.errors import InsufficientSites
from fedstats.federations import Member
from fedstats.models import PartialFailure
from fedstats.resolver import ResolvedScope

log = logging.getLogger(__name__)

_TRANSIENT_STATUS = {502, 503, 504}


class _SiteFailure(Exception):
    def __init__(self, reason: str, transient: bool = False):
        self.reason = reason
        self.transient = transient
        super().__init__(reason)


@dataclass
class Collection:
    """Aggregates per answering site plus the reasons other sites were left out."""

    aggregates: dict[str, list[SiteAggregate]]
    excluded: dict[str, str] = field(default_factory=dict)
    total_sites: int = 0

    def all_aggregates(self) -> list[SiteAggregate]:
        return [agg for aggs in self.aggregates.values() for agg in aggs]

    def partial_failure(self) -> PartialFailure | None:
        if not self.excluded:
            return None
        return PartialFailure(
            excluded_sites=tuple(sorted(self.excluded)),
            reasons=dict(self.excluded),
            total_sites=self.total_sites,
        )


class AggregateCollector:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        config: CollectorConfig | None = None,
    ):
        self._config = config or settings.collector
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self._config.site_timeout_s)
        self._semaphore = asyncio.Semaphore(self._config.max_concurrency)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def collect(
        self,
        scope: ResolvedScope,
        variable: str,
        variant: str = "numeric",
        variable_2: str | None = None,
    ) -> Collection:
        """Gather aggregates from every site in scope.

        Raises InsufficientSites when ``excluded / total`` reaches the
        configured maximum excluded fraction.
        """
        total = len(scope.sites)
        if total == 0:
            raise InsufficientSites("No federation member serves the requested groups")

        outcomes = await asyncio.gather(
            *(
                self._fetch_site(scope, site, variable, variant, variable_2)
                for site in scope.sites
            )
        )

        collection = Collection(aggregates={}, total_sites=total)
        for site_id, aggregates, reason in outcomes:
            if reason is not None:
                collection.excluded[site_id] = reason
            else:
                collection.aggregates[site_id] = aggregates

        n_excluded = len(collection.excluded)
        if n_excluded:
            log.warning(
                "Excluded %d of %d site(s) from collection: %s",
                n_excluded, total, ", ".join(sorted(collection.excluded)),
            )
        if not collection.aggregates or n_excluded / total >= self._config.max_excluded_fraction:
            raise InsufficientSites(
                f"Only {total - n_excluded} of {total} site(s) answered; "
                f"at most {self._config.max_excluded_fraction:.0%} may be missing"
            )
        return collection

    def _payload(
        self,
        scope: ResolvedScope,
        site: Member,
        variable: str,
        variant: str,
        variable_2: str | None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "federation_id": scope.federation_id,
            "variable": variable,
            "variant": variant,
            "group_by": scope.group_by,
            "group_ids": scope.site_groups(site),
            "filters": [p.model_dump(mode="json") for p in scope.filters],
            "min_sample_count": scope.min_sample_count,
        }
        if variable_2 is not None:
            payload["variable_2"] = variable_2
        return payload

    async def _fetch_site(
        self,
        scope: ResolvedScope,
        site: Member,
        variable: str,
        variant: str,
        variable_2: str | None,
    ) -> tuple[str, list[SiteAggregate], str | None]:
        payload = self._payload(scope, site, variable, variant, variable_2)
        attempts = 1 + max(self._config.retries, 0)
        reason = ""
        for attempt in range(1, attempts + 1):
            try:
                async with self._semaphore:
                    body = await asyncio.wait_for(
                        self._request(site, payload), self._config.site_timeout_s
                    )
                return site.id, self._parse(scope, site, body), None
            except asyncio.TimeoutError:
                reason = f"timed out after {self._config.site_timeout_s}s"
            except httpx.TransportError as exc:
                reason = f"transport error: {exc.__class__.__name__}"
            except _SiteFailure as exc:
                reason = exc.reason
                if not exc.transient:
                    break
            if attempt < attempts:
                log.info("Retrying site %s (%s)", site.id, reason)
        log.warning("Site %s excluded: %s", site.id, reason)
        return site.id, [], reason

    async def _request(self, site: Member, payload: dict[str, Any]) -> Any:
        headers = {}
        if site.api_token:
            headers["Authorization"] = f"Bearer {site.api_token}"
        resp = await self._client.post(
            f"{site.url.rstrip('/')}/aggregate", json=payload, headers=headers
        )
        if resp.status_code in _TRANSIENT_STATUS:
            raise _SiteFailure(f"HTTP {resp.status_code}", transient=True)
        if resp.status_code >= 400:
            raise _SiteFailure(f"HTTP {resp.status_code}")
        if not resp.content:
            raise _SiteFailure("empty response")
        try:
            return resp.json()
        except ValueError as exc:
            raise _SiteFailure("malformed JSON") from exc

    def _parse(self, scope: ResolvedScope, site: Member, body: Any) -> list[SiteAggregate]:
        if not isinstance(body, dict) or not isinstance(body.get("aggregates"), list):
            raise _SiteFailure("response has no aggregates list")
        wanted = set(scope.site_groups(site))
        aggregates = []
        for entry in body["aggregates"]:
            if not isinstance(entry, dict):
                raise _SiteFailure("malformed aggregate entry")
            data = {**entry, "site_id": site.id}
            if scope.group_by == "federation_member":
                data["group_id"] = site.id
            try:
                agg = SiteAggregate.model_validate(data)
            except pydantic.ValidationError:
                raise _SiteFailure("malformed aggregate entry")
            if agg.group_id in wanted:
                aggregates.append(agg)
        return aggregates
