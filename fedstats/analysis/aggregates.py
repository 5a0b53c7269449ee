"""Per-site aggregates and their aggregate-safe combination.

Sites report ``n``, ``sum`` and ``sum_squares`` per group. Each site report
is turned into ``(n, mean, M2)`` and site summaries are merged pairwise with
the parallel update of Chan, Golub and LeVeque:

    delta = mean_b - mean_a
    mean  = mean_a + delta * n_b / n
    M2    = M2_a + M2_b + delta**2 * n_a * n_b / n

which stays stable where the naive ``sum_squares - sum**2 / N`` over the
whole federation cancels catastrophically. Variance is the sample variance
``M2 / (n - 1)``.

Percentiles cannot be exact without raw records. Sites may attach a quantile
sketch (``{probability: value}``); sketches are merged by inverting the
n-weighted mixture of the per-site piecewise-linear CDFs.
"""

import math
from collections.abc import Iterable
from dataclasses import dataclass
from functools import reduce

import numpy as np
from pydantic import BaseModel, ConfigDict

from fedstats.errors import CorruptAggregate

DEFAULT_PERCENTILES = (5, 25, 50, 75, 95)

# Relative slack allowed when sum_squares undershoots sum**2/n through rounding
_M2_TOLERANCE = 1e-9
# Relative gap below which two site means are treated as the same value
_MEAN_TOLERANCE = 1e-12


class SiteAggregate(BaseModel):
    """Summary one site reports for one group. Never leaves the engine."""

    model_config = ConfigDict(frozen=True)

    site_id: str
    group_id: str
    n: float
    sum: float = 0.0
    sum_squares: float = 0.0
    min: float | None = None
    max: float | None = None
    quantiles: dict[float, float] | None = None
    category_counts: dict[str, dict[str, float]] | None = None


def _finite(value: float | None) -> bool:
    return value is None or math.isfinite(value)


def check_aggregate(agg: SiteAggregate) -> None:
    """Raise CorruptAggregate for any value no honest site could report."""
    where = f"site {agg.site_id}, group {agg.group_id}"
    if not all(_finite(v) for v in (agg.n, agg.sum, agg.sum_squares, agg.min, agg.max)):
        raise CorruptAggregate(f"Non-finite value in aggregate from {where}")
    if agg.n < 0 or not float(agg.n).is_integer():
        raise CorruptAggregate(f"Invalid count {agg.n} in aggregate from {where}")
    if agg.sum_squares < 0:
        raise CorruptAggregate(f"Negative sum of squares in aggregate from {where}")
    if agg.n > 0:
        m2 = agg.sum_squares - agg.sum * agg.sum / agg.n
        if m2 < -_M2_TOLERANCE * max(agg.sum_squares, 1.0):
            raise CorruptAggregate(f"Inconsistent sum/sum_squares in aggregate from {where}")
    if agg.min is not None and agg.max is not None and agg.min > agg.max:
        raise CorruptAggregate(f"min exceeds max in aggregate from {where}")
    if agg.quantiles:
        for p, v in agg.quantiles.items():
            if not (math.isfinite(p) and math.isfinite(v)) or not 0.0 <= p <= 1.0:
                raise CorruptAggregate(f"Invalid quantile sketch in aggregate from {where}")
    if agg.category_counts:
        for row in agg.category_counts.values():
            for count in row.values():
                if not math.isfinite(count) or count < 0 or not float(count).is_integer():
                    raise CorruptAggregate(f"Invalid category count in aggregate from {where}")


def check_all(aggregates: Iterable[SiteAggregate]) -> None:
    for agg in aggregates:
        check_aggregate(agg)


@dataclass(frozen=True)
class GroupSummary:
    group_id: str
    n: int
    mean: float
    m2: float
    min: float | None = None
    max: float | None = None
    # (n, quantile sketch) per contributing site; None when a site sent no sketch
    sketches: tuple[tuple[int, dict[float, float] | None], ...] = ()

    @property
    def variance(self) -> float | None:
        if self.n < 2:
            return None
        return self.m2 / (self.n - 1)

    @property
    def std_dev(self) -> float | None:
        var = self.variance
        return math.sqrt(var) if var is not None else None

    @classmethod
    def from_site(cls, agg: SiteAggregate, group_id: str | None = None) -> "GroupSummary":
        n = int(agg.n)
        mean = agg.sum / n
        m2 = agg.sum_squares - agg.sum * mean
        # rounding residue from a constant group
        if m2 <= _M2_TOLERANCE * max(agg.sum_squares, 1.0):
            m2 = 0.0
        return cls(
            group_id=group_id or agg.group_id,
            n=n,
            mean=mean,
            m2=m2,
            min=agg.min,
            max=agg.max,
            sketches=((n, _anchored_sketch(agg)),),
        )

    def merge(self, other: "GroupSummary") -> "GroupSummary":
        n = self.n + other.n
        delta = other.mean - self.mean
        if abs(delta) <= _MEAN_TOLERANCE * max(abs(self.mean), abs(other.mean)):
            delta = 0.0
        mean = self.mean + delta * other.n / n
        m2 = self.m2 + other.m2 + delta * delta * self.n * other.n / n
        return GroupSummary(
            group_id=self.group_id,
            n=n,
            mean=mean,
            m2=m2,
            min=_pick(min, self.min, other.min),
            max=_pick(max, self.max, other.max),
            sketches=self.sketches + other.sketches,
        )

    def percentiles(self, percentiles: Iterable[int] = DEFAULT_PERCENTILES) -> dict[str, float] | None:
        """Approximate percentiles from the merged site sketches, or None."""
        if not self.sketches or any(s is None for _, s in self.sketches):
            return None
        probs = [p / 100.0 for p in percentiles]
        values = merge_sketches([(n, s) for n, s in self.sketches], probs)
        return {f"p{p}": float(v) for p, v in zip(percentiles, values)}


def _pick(fn, a: float | None, b: float | None) -> float | None:
    if a is None:
        return b
    if b is None:
        return a
    return fn(a, b)


def _anchored_sketch(agg: SiteAggregate) -> dict[float, float] | None:
    if not agg.quantiles:
        return None
    sketch = dict(agg.quantiles)
    if agg.min is not None:
        sketch.setdefault(0.0, agg.min)
    if agg.max is not None:
        sketch.setdefault(1.0, agg.max)
    return sketch


def merge_sketches(sketches: list[tuple[int, dict[float, float]]], probs: list[float]) -> np.ndarray:
    """Invert the n-weighted mixture of per-site piecewise-linear CDFs.

    Interpolation also runs across gaps between sites, so a percentile can land
    between two sites' ranges where no observation exists (two sites constant
    at 5 and 7 give p75 = 6.0).
    """
    grid = np.unique(np.concatenate([np.fromiter(s.values(), dtype=float) for _, s in sketches]))
    total = sum(n for n, _ in sketches)
    cdf = np.zeros_like(grid)
    for n, sketch in sketches:
        ps = np.array(sorted(sketch), dtype=float)
        vs = np.maximum.accumulate(np.array([sketch[p] for p in ps], dtype=float))
        cdf += n * np.interp(grid, vs, ps, left=0.0, right=1.0)
    cdf /= total
    # np.interp needs a non-decreasing abscissa; the mixture CDF already is one
    return np.interp(probs, cdf, grid)


def combine(group_id: str, aggregates: Iterable[SiteAggregate]) -> GroupSummary | None:
    """Merge all non-empty site aggregates for one group, or None if none had data."""
    parts = [GroupSummary.from_site(a, group_id) for a in aggregates if a.n > 0]
    if not parts:
        return None
    return reduce(GroupSummary.merge, parts)


def combine_by_group(
    aggregates: Iterable[SiteAggregate], group_ids: Iterable[str]
) -> dict[str, GroupSummary]:
    """Combine site aggregates into one summary per group, in group_ids order."""
    by_group: dict[str, list[SiteAggregate]] = {}
    for agg in aggregates:
        by_group.setdefault(agg.group_id, []).append(agg)
    summaries: dict[str, GroupSummary] = {}
    for gid in group_ids:
        summary = combine(gid, by_group.get(gid, []))
        if summary is not None:
            summaries[gid] = summary
    return summaries


def combine_contingency(
    aggregates: Iterable[SiteAggregate],
) -> tuple[list[str], list[str], np.ndarray]:
    """Sum per-site category counts into one table over the union of categories."""
    totals: dict[tuple[str, str], int] = {}
    rows: set[str] = set()
    cols: set[str] = set()
    for agg in aggregates:
        for row, counts in (agg.category_counts or {}).items():
            rows.add(row)
            for col, count in counts.items():
                cols.add(col)
                totals[(row, col)] = totals.get((row, col), 0) + int(count)
    row_labels = sorted(rows)
    col_labels = sorted(cols)
    table = np.zeros((len(row_labels), len(col_labels)), dtype=np.int64)
    for i, r in enumerate(row_labels):
        for j, c in enumerate(col_labels):
            table[i, j] = totals.get((r, c), 0)
    return row_labels, col_labels, table
