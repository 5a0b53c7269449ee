"""Descriptive statistics per group, from site aggregates only."""

import logging
from collections.abc import Iterable

from fedstats.analysis import (
    AnalysisContext,
    register,
    suppress_small_groups,
    with_collection_notes,
)
from fedstats.analysis.aggregates import (
    GroupSummary,
    SiteAggregate,
    check_all,
    combine,
    combine_by_group,
)
from fedstats.errors import InsufficientSampleSize
from fedstats.models import DescriptiveRequest, DescriptiveResult, GroupStats
from fedstats.resolver import resolve

log = logging.getLogger(__name__)


def group_stats(summary: GroupSummary, include_percentiles: bool = False) -> GroupStats:
    percentiles = summary.percentiles() if include_percentiles else None
    return GroupStats(
        group_id=summary.group_id,
        count=summary.n,
        mean=summary.mean,
        variance=summary.variance,
        std_dev=summary.std_dev,
        min=summary.min,
        max=summary.max,
        median=percentiles["p50"] if percentiles else None,
        percentiles=percentiles,
    )


def descriptive(
    aggregates: Iterable[SiteAggregate],
    include_percentiles: bool = True,
    *,
    variable: str = "",
    group_by: str = "device_group",
    group_ids: Iterable[str] | None = None,
) -> DescriptiveResult:
    aggregates = list(aggregates)
    check_all(aggregates)

    if group_ids is None:
        group_ids = sorted({a.group_id for a in aggregates})
    group_ids = list(group_ids)

    summaries = combine_by_group(aggregates, group_ids)
    overall = combine("all", aggregates)
    if overall is None:
        raise InsufficientSampleSize(f"No observations of '{variable}' in any group")

    warnings = [f"Group {gid} has no observations." for gid in group_ids if gid not in summaries]
    groups = tuple(group_stats(s, include_percentiles) for s in summaries.values())

    overall_stats = group_stats(overall, include_percentiles)
    approximate = include_percentiles and overall_stats.percentiles is not None
    if include_percentiles and overall_stats.percentiles is None:
        warnings.append("Percentiles omitted: not every site reported a quantile sketch.")

    return DescriptiveResult(
        variable=variable,
        group_by=group_by,
        groups=groups,
        overall=overall_stats,
        percentiles_approximate=approximate,
        warnings=tuple(warnings),
    )


@register("descriptive")
async def descriptive_analysis(ctx: AnalysisContext, params: DescriptiveRequest) -> DescriptiveResult:
    scope = resolve(ctx.snapshot, params.group_by, params.group_ids, params.filters)
    collection = await ctx.collector.collect(scope, params.variable, "numeric")
    aggregates, warnings = suppress_small_groups(
        collection.all_aggregates(), scope.min_sample_count
    )

    result = descriptive(
        aggregates,
        params.include_percentiles,
        variable=params.variable,
        group_by=params.group_by,
        group_ids=scope.group_ids,
    )
    return with_collection_notes(result, collection, warnings)
