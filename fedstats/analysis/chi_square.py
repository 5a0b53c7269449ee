"""Pearson chi-square test of independence on a federated contingency table."""

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
from fedstats.analysis.aggregates import SiteAggregate, check_all, combine_contingency
from fedstats.errors import DegenerateTable, ValidationError
from fedstats.models import ChiSquareRequest, ChiSquareResult
from fedstats.resolver import resolve

log = logging.getLogger(__name__)


def chi_square(
    contingency_counts: Iterable[SiteAggregate],
    confidence_level: float = 0.95,
    *,
    variable_1: str = "",
    variable_2: str = "",
) -> ChiSquareResult:
    check_confidence_level(confidence_level)
    contingency_counts = list(contingency_counts)
    check_all(contingency_counts)

    rows, cols, table = combine_contingency(contingency_counts)
    if len(rows) < 2 or len(cols) < 2:
        raise DegenerateTable(
            f"Contingency table is {len(rows)}x{len(cols)}; at least 2x2 is required"
        )
    n = int(table.sum())
    if n == 0:
        raise DegenerateTable("Contingency table is empty")

    # A zero margin forces a zero expected count in its whole row or column
    empty_rows = [r for r, total in zip(rows, table.sum(axis=1)) if total == 0]
    empty_cols = [c for c, total in zip(cols, table.sum(axis=0)) if total == 0]
    if empty_rows or empty_cols:
        raise DegenerateTable(
            "Zero expected counts for categories: "
            + ", ".join(f"{variable_1}={r}" for r in empty_rows)
            + (", " if empty_rows and empty_cols else "")
            + ", ".join(f"{variable_2}={c}" for c in empty_cols)
        )

    chi2, p_value, dof, expected = stats.chi2_contingency(table, correction=False)
    chi2 = float(chi2)
    p_value = float(p_value)

    warnings = []
    if (expected < 5).any():
        warnings.append("Some expected cell counts are below 5; the chi-square approximation may be poor.")

    cramers_v = math.sqrt(chi2 / (n * (min(table.shape) - 1)))

    return ChiSquareResult(
        variable_1=variable_1,
        variable_2=variable_2,
        chi_square_statistic=chi2,
        p_value=p_value,
        degrees_of_freedom=int(dof),
        significant=p_value < 1 - confidence_level,
        cramers_v=cramers_v,
        n=n,
        rows=tuple(rows),
        columns=tuple(cols),
        observed=tuple(tuple(int(x) for x in row) for row in table),
        confidence_level=confidence_level,
        warnings=tuple(warnings),
    )


@register("chi-square")
async def chi_square_analysis(ctx: AnalysisContext, params: ChiSquareRequest) -> ChiSquareResult:
    if params.variable_1 == params.variable_2:
        raise ValidationError("variable_1 and variable_2 must differ")
    check_confidence_level(params.confidence_level)

    scope = resolve(ctx.snapshot, params.group_by, params.group_ids, params.filters)
    collection = await ctx.collector.collect(
        scope, params.variable_1, "contingency", variable_2=params.variable_2
    )
    aggregates, warnings = suppress_small_groups(
        collection.all_aggregates(), scope.min_sample_count
    )

    result = chi_square(
        aggregates,
        params.confidence_level,
        variable_1=params.variable_1,
        variable_2=params.variable_2,
    )
    return with_collection_notes(result, collection, warnings)
