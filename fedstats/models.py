import enum
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

QueryKind = Literal["descriptive", "t-test", "chi-square", "anova"]

GROUP_BY_CHOICES = ("device_group", "federation_member")


class QueryStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueryStatus.COMPLETED, QueryStatus.FAILED)


# ── Filters ──


class AnalyticsFilter(BaseModel):
    """Filter criteria applied identically at every site before aggregation.

    The named fields are shorthands; ``predicates`` holds free-form
    ``{"field", "op", ...}`` entries that the resolver parses into typed
    predicates.
    """

    model_config = ConfigDict(frozen=True)

    start_time: datetime | None = None
    end_time: datetime | None = None
    device_platform: str | None = None
    min_sample_count: int | None = None
    predicates: tuple[dict[str, Any], ...] = ()


Scalar = Union[bool, int, float, str, None]
Orderable = Union[float, datetime]

_FIELD_PATTERN = r"^[A-Za-z_][A-Za-z0-9_.]*$"


class _Predicate(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str = Field(pattern=_FIELD_PATTERN)


class EqualityPredicate(_Predicate):
    op: Literal["eq", "ne"]
    value: Scalar


class ComparisonPredicate(_Predicate):
    op: Literal["gt", "gte", "lt", "lte"]
    value: Orderable


class MembershipPredicate(_Predicate):
    op: Literal["in", "not_in"]
    values: tuple[Scalar, ...] = Field(min_length=1)


class BetweenPredicate(_Predicate):
    op: Literal["between"]
    low: Orderable
    high: Orderable

    @model_validator(mode="after")
    def _check_bounds(self):
        if type(self.low) is not type(self.high):
            raise ValueError("between bounds must be of the same type")
        if self.low > self.high:
            raise ValueError("between requires low <= high")
        return self


Predicate = Annotated[
    Union[EqualityPredicate, ComparisonPredicate, MembershipPredicate, BetweenPredicate],
    Field(discriminator="op"),
]


# ── Requests ──


class DescriptiveRequest(BaseModel):
    variable: str = Field(min_length=1)
    group_by: str = "device_group"
    group_ids: list[str] | None = None
    include_percentiles: bool = True
    filters: AnalyticsFilter | None = None


class TTestRequest(BaseModel):
    variable: str = Field(min_length=1)
    group_a: str = Field(min_length=1)
    group_b: str = Field(min_length=1)
    group_by: str = "device_group"
    confidence_level: float = 0.95
    filters: AnalyticsFilter | None = None


class ChiSquareRequest(BaseModel):
    variable_1: str = Field(min_length=1)
    variable_2: str = Field(min_length=1)
    group_by: str = "device_group"
    group_ids: list[str] | None = None
    confidence_level: float = 0.95
    filters: AnalyticsFilter | None = None


class AnovaRequest(BaseModel):
    variable: str = Field(min_length=1)
    group_by: str = "device_group"
    group_ids: list[str] | None = None
    confidence_level: float = 0.95
    post_hoc: bool = True
    filters: AnalyticsFilter | None = None


REQUEST_MODELS: dict[str, type[BaseModel]] = {
    "descriptive": DescriptiveRequest,
    "t-test": TTestRequest,
    "chi-square": ChiSquareRequest,
    "anova": AnovaRequest,
}


# ── Results ──


class PartialFailure(BaseModel):
    """Sites left out of an otherwise successful collection."""

    model_config = ConfigDict(frozen=True)

    excluded_sites: tuple[str, ...]
    reasons: dict[str, str] = {}
    total_sites: int


class _Result(BaseModel):
    model_config = ConfigDict(frozen=True)

    warnings: tuple[str, ...] = ()
    partial_failure: PartialFailure | None = None


class GroupStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    group_id: str
    count: int
    mean: float
    variance: float | None = None
    std_dev: float | None = None
    min: float | None = None
    max: float | None = None
    median: float | None = None
    percentiles: dict[str, float] | None = None


class DescriptiveResult(_Result):
    analysis_type: Literal["descriptive"] = "descriptive"
    variable: str
    group_by: str
    groups: tuple[GroupStats, ...]
    overall: GroupStats
    percentiles_approximate: bool = False


class ConfidenceInterval(BaseModel):
    model_config = ConfigDict(frozen=True)

    lower: float
    upper: float
    level: float


class TTestResult(_Result):
    analysis_type: Literal["t-test"] = "t-test"
    variable: str
    group_a: str
    group_b: str
    n_a: int
    n_b: int
    mean_a: float
    mean_b: float
    mean_difference: float
    t_statistic: float
    p_value: float
    degrees_of_freedom: float
    confidence_interval: ConfidenceInterval
    cohens_d: float | None = None
    significant: bool
    confidence_level: float


class ChiSquareResult(_Result):
    analysis_type: Literal["chi-square"] = "chi-square"
    variable_1: str
    variable_2: str
    chi_square_statistic: float
    p_value: float
    degrees_of_freedom: int
    significant: bool
    cramers_v: float | None = None
    n: int
    rows: tuple[str, ...]
    columns: tuple[str, ...]
    observed: tuple[tuple[int, ...], ...]
    confidence_level: float


class PostHocPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    group_a: str
    group_b: str
    mean_difference: float
    q_statistic: float
    p_value: float
    significant: bool


class AnovaResult(_Result):
    analysis_type: Literal["anova"] = "anova"
    variable: str
    group_by: str
    groups: tuple[GroupStats, ...]
    f_statistic: float
    p_value: float
    degrees_of_freedom_between: int
    degrees_of_freedom_within: int
    eta_squared: float
    significant: bool
    post_hoc_pairs: tuple[PostHocPair, ...] | None = None
    post_hoc_note: str | None = None
    confidence_level: float


AnalysisResult = Annotated[
    Union[DescriptiveResult, TTestResult, ChiSquareResult, AnovaResult],
    Field(discriminator="analysis_type"),
]


# ── Queries ──


class AnalyticsQuery(BaseModel):
    """One submitted analysis. Replaced wholesale on every transition."""

    model_config = ConfigDict(frozen=True)

    id: str
    federation_id: str
    query_type: QueryKind
    variable: str
    group_by: str | None = None
    parameters: dict[str, Any] = {}
    status: QueryStatus = QueryStatus.PENDING
    error_kind: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    result: AnalysisResult | None = None

    @model_validator(mode="after")
    def _check_outcome(self):
        if (self.result is not None) != (self.status == QueryStatus.COMPLETED):
            raise ValueError("result must be present exactly when status is completed")
        if self.status == QueryStatus.FAILED and not self.error_kind:
            raise ValueError("failed queries must record an error kind")
        return self


class AnalyticsQueryListResponse(BaseModel):
    queries: list[AnalyticsQuery]
    total: int


class QueryHandle(BaseModel):
    query_id: str
    status: QueryStatus


# ── Federation admin models ──


class MemberIn(BaseModel):
    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    device_groups: list[str] = []
    api_token: str = ""


class MemberOut(BaseModel):
    id: str
    name: str
    url: str
    device_groups: list[str]
    api_token: str  # masked before returning


class FederationIn(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    members: list[MemberIn] = []


class FederationOut(BaseModel):
    id: str
    name: str
    description: str
    members: list[MemberOut]
