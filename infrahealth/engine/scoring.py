"""Health scoring: severity-weighted deductions rolled up per category.

Each category starts at 100 and loses ``weight(severity)`` points per
issue, floored at zero. The overall score is the category-weighted average
of the category scores, rounded half up.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from infrahealth.checks.models import (
    CategoryScore,
    EvaluatedResult,
    EvaluationStatus,
    ScoreReport,
    Severity,
)

logger = logging.getLogger(__name__)

MAX_SCORE = 100
DEFAULT_CATEGORY_WEIGHT = 1.0

DEFAULT_SEVERITY_WEIGHTS: Mapping[Severity, int] = MappingProxyType({
    Severity.CRITICAL: 10,
    Severity.HIGH: 5,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
})


def round_half_up(value: float) -> int:
    """Nearest integer, with halves rounded up (89.5 -> 90)."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class ScoringConfig:
    severity_weights: Mapping[Severity, int] = field(default_factory=lambda: dict(DEFAULT_SEVERITY_WEIGHTS))
    category_weights: Mapping[str, float] = field(default_factory=dict)
    display_order: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        weights = {}
        for key, value in self.severity_weights.items():
            try:
                severity = Severity.parse(key)
            except ValueError as e:
                raise ValueError(f"Invalid severity weight table: {e}") from None
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"Severity weight for {severity.value} must be a non-negative integer, got {value!r}")
            weights[severity] = value
        missing = [s.value for s in Severity if s not in weights]
        if missing:
            raise ValueError(f"Severity weight table is missing: {', '.join(missing)}")

        for category, weight in self.category_weights.items():
            if weight < 0:
                raise ValueError(f"Category weight for {category} must be >= 0, got {weight}")

        object.__setattr__(self, "severity_weights", MappingProxyType(weights))
        object.__setattr__(self, "category_weights", MappingProxyType(dict(self.category_weights)))
        object.__setattr__(self, "display_order", MappingProxyType(dict(self.display_order)))


class Scorer:
    """Pure function object; holds configuration only."""

    def __init__(self, config: ScoringConfig | None = None, log: logging.Logger | None = None) -> None:
        self.config = config or ScoringConfig()
        self.log = log or logger

    def score(self, results: Iterable[EvaluatedResult]) -> ScoreReport:
        grouped: dict[str, list[EvaluatedResult]] = defaultdict(list)
        for result in results:
            grouped[result.category].append(result)

        warnings: list[str] = []
        if not grouped:
            warnings.append("No results to score; overall score defaults to 100")
            for w in warnings:
                self.log.warning(w)
            return ScoreReport(overall=MAX_SCORE, categories=(), total_weight=0.0, warnings=tuple(warnings))

        order = self.config.display_order
        category_ids = sorted(grouped, key=lambda c: (order.get(c, math.inf), c))

        partial = []
        for category_id in category_ids:
            weight = self.config.category_weights.get(category_id)
            if weight is None:
                weight = DEFAULT_CATEGORY_WEIGHT
                warnings.append(f"Category '{category_id}' has no configured weight; using {DEFAULT_CATEGORY_WEIGHT:g}")
            partial.append((category_id, self._category(grouped[category_id]), float(weight)))

        total_weight = sum(weight for _, _, weight in partial)
        if total_weight == 0:
            warnings.append("All category weights are zero; averaging categories equally")
            partial = [(cid, stats, 1.0) for cid, stats, _ in partial]
            total_weight = float(len(partial))

        categories = []
        weighted_sum = 0.0
        for category_id, stats, weight in partial:
            value, deduction, counts, by_status = stats
            contribution = value * weight / total_weight
            weighted_sum += value * weight
            categories.append(CategoryScore(
                category_id=category_id,
                value=value,
                checks_executed=sum(by_status.values()),
                checks_passed=by_status[EvaluationStatus.PASS],
                checks_warning=by_status[EvaluationStatus.WARNING],
                checks_failed=by_status[EvaluationStatus.FAIL],
                checks_error=by_status[EvaluationStatus.ERROR],
                issue_counts=MappingProxyType(counts),
                deduction=deduction,
                weight=weight,
                weighted_contribution=contribution,
            ))

        overall = round_half_up(weighted_sum / total_weight)
        for w in warnings:
            self.log.warning(w)
        self.log.debug("Scored %d categories, overall %d", len(categories), overall)
        return ScoreReport(
            overall=overall,
            categories=tuple(categories),
            total_weight=total_weight,
            warnings=tuple(warnings),
        )

    def _category(
        self, results: list[EvaluatedResult],
    ) -> tuple[int, int, dict[str, int], dict[EvaluationStatus, int]]:
        counts = {s.value: 0 for s in Severity}
        by_status = {s: 0 for s in EvaluationStatus}
        for result in results:
            by_status[result.status] += 1
            for issue in result.issues:
                counts[issue.severity.value] += 1

        deduction = sum(counts[s.value] * w for s, w in self.config.severity_weights.items())
        value = max(0, MAX_SCORE - deduction)
        return value, deduction, counts, by_status
