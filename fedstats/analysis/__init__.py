import importlib
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass

from fedstats.analysis.aggregates import SiteAggregate
from fedstats.errors import ValidationError
from fedstats.federations import MembershipSnapshot

log = logging.getLogger(__name__)

_REGISTRY: dict[str, Callable] = {}

# Analysis modules, imported at the bottom to auto-register
_MODULES = [
    "fedstats.analysis.descriptive",
    "fedstats.analysis.ttest",
    "fedstats.analysis.chi_square",
    "fedstats.analysis.anova",
]


@dataclass
class AnalysisContext:
    """What a registered analysis needs to run one query.

    ``collector`` is an AggregateCollector; ``snapshot`` is the membership
    view taken when the query started running.
    """

    snapshot: MembershipSnapshot
    collector: object


def register(name: str):
    """Decorator to register an analysis function."""

    def decorator(fn):
        _REGISTRY[name] = fn
        return fn

    return decorator


def available() -> list[str]:
    return sorted(_REGISTRY)


def check_confidence_level(level: float) -> None:
    if not (math.isfinite(level) and 0.0 < level < 1.0):
        raise ValidationError(f"confidence_level must be strictly between 0 and 1, got: {level}")


def suppress_small_groups(
    aggregates: list[SiteAggregate], min_sample_count: int
) -> tuple[list[SiteAggregate], list[str]]:
    """Drop site/group aggregates below the minimum sample count."""
    if min_sample_count <= 0:
        return aggregates, []
    kept = [a for a in aggregates if a.n >= min_sample_count]
    dropped = len(aggregates) - len(kept)
    warnings = []
    if dropped:
        log.warning("Suppressed %d site aggregate(s) with n < %d", dropped, min_sample_count)
        warnings.append(
            f"{dropped} site aggregate(s) suppressed for having fewer than "
            f"{min_sample_count} samples."
        )
    return kept, warnings


def with_collection_notes(result, collection, warnings: list[str]):
    """Attach suppression warnings and any partial-failure marker to a result."""
    partial = collection.partial_failure()
    notes = list(warnings)
    if partial is not None:
        notes.append(
            f"{len(partial.excluded_sites)} of {partial.total_sites} site(s) excluded: "
            f"{', '.join(partial.excluded_sites)}."
        )
    return result.model_copy(
        update={"warnings": tuple(notes) + result.warnings, "partial_failure": partial}
    )


async def run_analysis(analysis_type: str, ctx: AnalysisContext, params):
    """Dispatch to the registered analysis function."""
    fn = _REGISTRY.get(analysis_type)
    if not fn:
        raise ValidationError(
            f"Unknown analysis type: {analysis_type}. "
            f"Available: {', '.join(available())}"
        )
    log.info("Running analysis: %s on federation %s", analysis_type, ctx.snapshot.federation_id)
    return await fn(ctx, params)


# Auto-import modules to trigger @register decorators
for _mod in _MODULES:
    importlib.import_module(_mod)
