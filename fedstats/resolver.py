"""Validates grouping and filters against a membership snapshot."""

import logging

import pydantic
from pydantic import BaseModel, ConfigDict, TypeAdapter

from fedstats.errors import InvalidFilter, UnknownGroup, ValidationError
from fedstats.federations import Member, MembershipSnapshot
from fedstats.models import (
    GROUP_BY_CHOICES,
    AnalyticsFilter,
    ComparisonPredicate,
    EqualityPredicate,
    Predicate,
)

log = logging.getLogger(__name__)

_predicate_adapter: TypeAdapter = TypeAdapter(Predicate)

# Named shorthand filters expand onto these site-side fields
TIMESTAMP_FIELD = "timestamp"
PLATFORM_FIELD = "device_platform"


class ResolvedScope(BaseModel):
    """Where to collect from and what to apply at each site."""

    model_config = ConfigDict(frozen=True)

    federation_id: str
    group_by: str
    group_ids: tuple[str, ...]
    sites: tuple[Member, ...]
    filters: tuple[Predicate, ...] = ()
    min_sample_count: int = 0

    def site_groups(self, site: Member) -> list[str]:
        """Groups of this scope that a given site contributes to."""
        if self.group_by == "federation_member":
            return [site.id]
        return [g for g in site.device_groups if g in self.group_ids]


def _parse_predicates(filters: AnalyticsFilter) -> list:
    predicates: list = []
    if filters.start_time is not None:
        predicates.append(
            ComparisonPredicate(field=TIMESTAMP_FIELD, op="gte", value=filters.start_time)
        )
    if filters.end_time is not None:
        predicates.append(
            ComparisonPredicate(field=TIMESTAMP_FIELD, op="lte", value=filters.end_time)
        )
    if filters.device_platform is not None:
        if not filters.device_platform.strip():
            raise InvalidFilter("device_platform must not be blank")
        predicates.append(
            EqualityPredicate(field=PLATFORM_FIELD, op="eq", value=filters.device_platform)
        )

    for raw in filters.predicates:
        try:
            predicates.append(_predicate_adapter.validate_python(raw))
        except pydantic.ValidationError as exc:
            first = exc.errors()[0]
            loc = ".".join(str(p) for p in first["loc"])
            raise InvalidFilter(f"Unsupported filter {raw!r}: {loc} {first['msg']}") from exc
    return predicates


def resolve_filters(filters: AnalyticsFilter | None) -> tuple[tuple, int]:
    """Turn an AnalyticsFilter into typed predicates plus a minimum group size."""
    if filters is None:
        return (), 0
    if filters.start_time and filters.end_time:
        start, end = filters.start_time, filters.end_time
        if (start.tzinfo is None) != (end.tzinfo is None):
            raise InvalidFilter("start_time and end_time must both be naive or both be aware")
        if start > end:
            raise InvalidFilter("start_time must not be after end_time")
    if filters.min_sample_count is not None and filters.min_sample_count < 0:
        raise InvalidFilter("min_sample_count must be non-negative")
    return tuple(_parse_predicates(filters)), filters.min_sample_count or 0


def resolve(
    snapshot: MembershipSnapshot,
    group_by: str,
    group_ids: list[str] | None = None,
    filters: AnalyticsFilter | None = None,
) -> ResolvedScope:
    """Validate a query's grouping and filters; no side effects."""
    if group_by not in GROUP_BY_CHOICES:
        raise ValidationError(
            f"group_by must be one of {', '.join(GROUP_BY_CHOICES)}, got: {group_by}"
        )

    if group_by == "federation_member":
        known = snapshot.member_ids()
    else:
        known = snapshot.device_groups()

    if group_ids is not None:
        if not group_ids:
            raise ValidationError("group_ids must not be empty when given")
        unknown = [g for g in group_ids if g not in known]
        if unknown:
            raise UnknownGroup(f"Unknown {group_by} id(s): {', '.join(unknown)}")
        # Preserve caller order, drop duplicates
        selected = tuple(dict.fromkeys(group_ids))
    else:
        selected = tuple(sorted(known))

    if not selected:
        raise UnknownGroup(f"Federation {snapshot.federation_id} has no {group_by} to analyse")

    if group_by == "federation_member":
        sites = tuple(m for m in snapshot.members if m.id in selected)
    else:
        sites = tuple(
            m for m in snapshot.members if any(g in selected for g in m.device_groups)
        )

    predicates, min_sample_count = resolve_filters(filters)

    log.debug(
        "Resolved scope: %d group(s) over %d site(s), %d predicate(s)",
        len(selected), len(sites), len(predicates),
    )
    return ResolvedScope(
        federation_id=snapshot.federation_id,
        group_by=group_by,
        group_ids=selected,
        sites=sites,
        filters=predicates,
        min_sample_count=min_sample_count,
    )
