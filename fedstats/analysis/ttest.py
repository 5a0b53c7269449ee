"""Welch's two-sample t-test over combined group aggregates."""

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
from fedstats.analysis.aggregates import SiteAggregate, check_all, combine
from fedstats.errors import InsufficientSampleSize, ValidationError, ZeroVariance
from fedstats.models import ConfidenceInterval, TTestRequest, TTestResult
from fedstats.resolver import resolve

log = logging.getLogger(__name__)


def t_test(
    agg_a: Iterable[SiteAggregate],
    agg_b: Iterable[SiteAggregate],
    confidence_level: float = 0.95,
    *,
    variable: str = "",
    group_a: str = "a",
    group_b: str = "b",
) -> TTestResult:
    """Welch's t-test; degrees of freedom by Welch–Satterthwaite."""
    check_confidence_level(confidence_level)
    agg_a, agg_b = list(agg_a), list(agg_b)
    check_all(agg_a)
    check_all(agg_b)

    a = combine(group_a, agg_a)
    b = combine(group_b, agg_b)
    n_a = a.n if a else 0
    n_b = b.n if b else 0
    if n_a < 2 or n_b < 2:
        raise InsufficientSampleSize(
            f"t-test needs at least 2 observations per group "
            f"({n_a} in {group_a}, {n_b} in {group_b})"
        )

    var_a, var_b = a.variance, b.variance
    se_a2 = var_a / n_a
    se_b2 = var_b / n_b
    se2 = se_a2 + se_b2
    if se2 == 0:
        raise ZeroVariance(f"Both {group_a} and {group_b} have zero variance")

    se = math.sqrt(se2)
    diff = a.mean - b.mean
    t_stat = diff / se
    df = se2 * se2 / (se_a2 * se_a2 / (n_a - 1) + se_b2 * se_b2 / (n_b - 1))
    p_value = float(2 * stats.t.sf(abs(t_stat), df))

    crit = float(stats.t.ppf(1 - (1 - confidence_level) / 2, df))
    ci = ConfidenceInterval(lower=diff - crit * se, upper=diff + crit * se, level=confidence_level)

    pooled_var = ((n_a - 1) * var_a + (n_b - 1) * var_b) / (n_a + n_b - 2)
    cohens_d = diff / math.sqrt(pooled_var) if pooled_var > 0 else None

    return TTestResult(
        variable=variable,
        group_a=group_a,
        group_b=group_b,
        n_a=n_a,
        n_b=n_b,
        mean_a=a.mean,
        mean_b=b.mean,
        mean_difference=diff,
        t_statistic=t_stat,
        p_value=p_value,
        degrees_of_freedom=df,
        confidence_interval=ci,
        cohens_d=cohens_d,
        significant=p_value < 1 - confidence_level,
        confidence_level=confidence_level,
    )


@register("t-test")
async def t_test_analysis(ctx: AnalysisContext, params: TTestRequest) -> TTestResult:
    if params.group_a == params.group_b:
        raise ValidationError("group_a and group_b must differ")
    check_confidence_level(params.confidence_level)

    scope = resolve(
        ctx.snapshot, params.group_by, [params.group_a, params.group_b], params.filters
    )
    collection = await ctx.collector.collect(scope, params.variable, "numeric")
    aggregates, warnings = suppress_small_groups(
        collection.all_aggregates(), scope.min_sample_count
    )

    result = t_test(
        [x for x in aggregates if x.group_id == params.group_a],
        [x for x in aggregates if x.group_id == params.group_b],
        params.confidence_level,
        variable=params.variable,
        group_a=params.group_a,
        group_b=params.group_b,
    )
    return with_collection_notes(result, collection, warnings)
