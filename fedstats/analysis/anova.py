"""One-way ANOVA with optional Tukey–Kramer post-hoc comparisons."""

import itertools
import logging
import math
from collections.abc import Iterable

from scipy import stats

from fedstats.analysis import (
    AnalysisContext,
    check_confidence_level,
    register,
    suppress_small_groups,
    with_collection_notes,
)
from fedstats.analysis.aggregates import GroupSummary, SiteAggregate, check_all, combine_by_group
from fedstats.analysis.descriptive import group_stats
from fedstats.errors import InsufficientSampleSize, ZeroVariance
from fedstats.models import AnovaRequest, AnovaResult, PostHocPair
from fedstats.resolver import resolve

log = logging.getLogger(__name__)


def _tukey_pairs(
    summaries: list[GroupSummary], msw: float, df_within: int, alpha: float
) -> tuple[PostHocPair, ...]:
    k = len(summaries)
    pairs = []
    for a, b in itertools.combinations(summaries, 2):
        diff = a.mean - b.mean
        se = math.sqrt(msw / 2 * (1 / a.n + 1 / b.n))
        q = abs(diff) / se
        p_value = float(stats.studentized_range.sf(q, k, df_within))
        pairs.append(
            PostHocPair(
                group_a=a.group_id,
                group_b=b.group_id,
                mean_difference=diff,
                q_statistic=q,
                p_value=p_value,
                significant=p_value < alpha,
            )
        )
    return tuple(pairs)


def anova(
    group_aggregates: Iterable[SiteAggregate],
    confidence_level: float = 0.95,
    post_hoc: bool = True,
    *,
    variable: str = "",
    group_by: str = "device_group",
    group_ids: Iterable[str] | None = None,
) -> AnovaResult:
    """One-way ANOVA from per-group n, mean and M2.

    Fewer than two non-empty groups is InsufficientSampleSize. Post-hoc
    pairs are only computed for three or more groups and a significant
    overall F-test; otherwise ``post_hoc_note`` says why they are missing.
    """
    check_confidence_level(confidence_level)
    group_aggregates = list(group_aggregates)
    check_all(group_aggregates)

    if group_ids is None:
        group_ids = sorted({a.group_id for a in group_aggregates})
    summaries = list(combine_by_group(group_aggregates, group_ids).values())

    k = len(summaries)
    if k < 2:
        raise InsufficientSampleSize(f"ANOVA needs at least 2 groups with data, got {k}")
    n_total = sum(s.n for s in summaries)
    df_between = k - 1
    df_within = n_total - k
    if df_within < 1:
        raise InsufficientSampleSize(
            f"ANOVA needs more observations than groups ({n_total} over {k} groups)"
        )

    grand_mean = sum(s.n * s.mean for s in summaries) / n_total
    ss_between = sum(s.n * (s.mean - grand_mean) ** 2 for s in summaries)
    ss_within = sum(s.m2 for s in summaries)
    if ss_within == 0:
        raise ZeroVariance("All groups have zero within-group variance")

    msb = ss_between / df_between
    msw = ss_within / df_within
    f_stat = msb / msw
    p_value = float(stats.f.sf(f_stat, df_between, df_within))
    alpha = 1 - confidence_level
    significant = p_value < alpha

    pairs = None
    note = None
    if post_hoc:
        if k < 3:
            note = "Post-hoc comparisons need at least 3 groups; omitted."
        elif not significant:
            note = (
                f"Overall F-test not significant at the {confidence_level:g} level; "
                "post-hoc comparisons omitted."
            )
        else:
            pairs = _tukey_pairs(summaries, msw, df_within, alpha)

    return AnovaResult(
        variable=variable,
        group_by=group_by,
        groups=tuple(group_stats(s) for s in summaries),
        f_statistic=f_stat,
        p_value=p_value,
        degrees_of_freedom_between=df_between,
        degrees_of_freedom_within=df_within,
        eta_squared=ss_between / (ss_between + ss_within),
        significant=significant,
        post_hoc_pairs=pairs,
        post_hoc_note=note,
        confidence_level=confidence_level,
    )


@register("anova")
async def anova_analysis(ctx: AnalysisContext, params: AnovaRequest) -> AnovaResult:
    check_confidence_level(params.confidence_level)

    scope = resolve(ctx.snapshot, params.group_by, params.group_ids, params.filters)
    collection = await ctx.collector.collect(scope, params.variable, "numeric")
    aggregates, warnings = suppress_small_groups(
        collection.all_aggregates(), scope.min_sample_count
    )

    result = anova(
        aggregates,
        params.confidence_level,
        params.post_hoc,
        variable=params.variable,
        group_by=params.group_by,
        group_ids=scope.group_ids,
    )
    return with_collection_notes(result, collection, warnings)
