"""Tests for site aggregate validation and combination."""

import math

import numpy as np
import pytest
from sitedata import site_aggregate

from fedstats.analysis.aggregates import (
    GroupSummary,
    SiteAggregate,
    check_aggregate,
    combine,
    combine_by_group,
    combine_contingency,
)
from fedstats.errors import CorruptAggregate


class TestCombine:
    def test_two_site_worked_example(self):
        aggs = [
            SiteAggregate(site_id="s1", group_id="g", n=10, sum=50, sum_squares=286),
            SiteAggregate(site_id="s2", group_id="g", n=20, sum=140, sum_squares=1151),
        ]
        summary = combine("g", aggs)

        assert summary.n == 30
        assert summary.mean == pytest.approx(190 / 30)
        assert summary.m2 == pytest.approx(36 + 171 + 4 * 10 * 20 / 30)
        assert summary.variance == pytest.approx(233.6666667 / 29)

    def test_matches_pooled_raw_data(self):
        rng = np.random.default_rng(7)
        values = rng.normal(50, 12, size=300)
        aggs = [
            site_aggregate("s1", "g", values[:40]),
            site_aggregate("s2", "g", values[40:210]),
            site_aggregate("s3", "g", values[210:]),
        ]
        summary = combine("g", aggs)

        assert summary.n == 300
        assert summary.mean == pytest.approx(values.mean())
        assert summary.variance == pytest.approx(values.var(ddof=1))
        assert summary.min == values.min()
        assert summary.max == values.max()

    def test_order_of_sites_does_not_matter(self):
        rng = np.random.default_rng(3)
        chunks = [rng.exponential(4, size=n) for n in (5, 50, 17)]
        aggs = [site_aggregate(f"s{i}", "g", c) for i, c in enumerate(chunks)]

        forward = combine("g", aggs)
        backward = combine("g", list(reversed(aggs)))

        assert forward.mean == pytest.approx(backward.mean)
        assert forward.m2 == pytest.approx(backward.m2)

    def test_empty_sites_are_skipped(self):
        aggs = [
            SiteAggregate(site_id="s1", group_id="g", n=0),
            site_aggregate("s2", "g", [1.0, 2.0, 3.0]),
        ]
        summary = combine("g", aggs)
        assert summary.n == 3
        assert summary.mean == pytest.approx(2.0)

    def test_no_data_returns_none(self):
        assert combine("g", []) is None
        assert combine("g", [SiteAggregate(site_id="s1", group_id="g", n=0)]) is None

    def test_single_observation_has_no_variance(self):
        summary = combine("g", [site_aggregate("s1", "g", [4.2])])
        assert summary.variance is None
        assert summary.std_dev is None

    @pytest.mark.parametrize("value", [0.1, 0.7, 1.3, 1234.567])
    def test_constant_sites_have_exactly_zero_spread(self, value):
        aggs = [site_aggregate("s1", "g", [value] * 3), site_aggregate("s2", "g", [value] * 7)]

        assert GroupSummary.from_site(aggs[0]).m2 == 0.0
        summary = combine("g", aggs)
        assert summary.m2 == 0.0
        assert summary.variance == 0.0

    def test_combine_by_group_keeps_requested_order(self):
        aggs = [
            site_aggregate("s1", "b", [1, 2]),
            site_aggregate("s1", "a", [3, 4]),
            site_aggregate("s2", "c", [5, 6]),
        ]
        summaries = combine_by_group(aggs, ["c", "a", "b", "missing"])
        assert list(summaries) == ["c", "a", "b"]


class TestPercentiles:
    def test_single_site_reproduces_its_sketch(self):
        values = np.arange(1, 101, dtype=float)
        summary = GroupSummary.from_site(site_aggregate("s1", "g", values))
        pct = summary.percentiles()

        assert set(pct) == {"p5", "p25", "p50", "p75", "p95"}
        assert pct["p50"] == pytest.approx(np.quantile(values, 0.5))
        assert pct["p25"] == pytest.approx(np.quantile(values, 0.25))

    def test_identical_sites_keep_the_same_percentiles(self):
        values = np.linspace(0, 10, 41)
        one = GroupSummary.from_site(site_aggregate("s1", "g", values))
        two = one.merge(GroupSummary.from_site(site_aggregate("s2", "g", values)))

        for key, value in one.percentiles().items():
            assert two.percentiles()[key] == pytest.approx(value)

    def test_merged_percentiles_are_monotone_and_bounded(self):
        rng = np.random.default_rng(11)
        aggs = [site_aggregate(f"s{i}", "g", rng.normal(i * 5, 2, size=80)) for i in range(3)]
        summary = combine("g", aggs)
        pct = summary.percentiles()
        ordered = [pct[k] for k in ("p5", "p25", "p50", "p75", "p95")]

        assert ordered == sorted(ordered)
        assert summary.min <= ordered[0] and ordered[-1] <= summary.max

    def test_missing_sketch_means_no_percentiles(self):
        aggs = [
            site_aggregate("s1", "g", [1, 2, 3]),
            site_aggregate("s2", "g", [4, 5, 6], quantiles=False),
        ]
        assert combine("g", aggs).percentiles() is None


class TestCheckAggregate:
    @pytest.mark.parametrize(
        "fields",
        [
            {"n": 3, "sum": math.nan, "sum_squares": 10},
            {"n": 3, "sum": 3, "sum_squares": math.inf},
            {"n": -1, "sum": 0, "sum_squares": 0},
            {"n": 2.5, "sum": 5, "sum_squares": 13},
            {"n": 2, "sum": 10, "sum_squares": 1},
            {"n": 2, "sum": 3, "sum_squares": 5, "min": 2, "max": 1},
            {"n": 2, "sum": 3, "sum_squares": 5, "quantiles": {1.5: 2.0}},
            {"n": 2, "category_counts": {"x": {"a": -1}}},
        ],
    )
    def test_rejects_impossible_values(self, fields):
        agg = SiteAggregate(site_id="s1", group_id="g", **fields)
        with pytest.raises(CorruptAggregate):
            check_aggregate(agg)

    def test_accepts_honest_report(self):
        check_aggregate(site_aggregate("s1", "g", [1.5, 2.5, 9.0]))

    def test_tolerates_rounding_in_sum_squares(self):
        # Every value identical: M2 is zero up to rounding
        agg = site_aggregate("s1", "g", [0.1] * 10)
        check_aggregate(agg)
        assert GroupSummary.from_site(agg).m2 >= 0.0


class TestContingency:
    def test_sums_over_union_of_categories(self):
        aggs = [
            SiteAggregate(site_id="s1", group_id="g", n=6, category_counts={"x": {"a": 1, "b": 2}, "y": {"a": 3}}),
            SiteAggregate(site_id="s2", group_id="g", n=9, category_counts={"y": {"b": 4, "c": 5}}),
        ]
        rows, cols, table = combine_contingency(aggs)

        assert rows == ["x", "y"]
        assert cols == ["a", "b", "c"]
        assert table.tolist() == [[1, 2, 0], [3, 4, 5]]
