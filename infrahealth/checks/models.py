"""Domain models for checks, results, issues, scores and runs.

Everything here is immutable once built: definitions are frozen at load
time, results and issues are created once by the engine and then only
read by the scorer, the store and the reporters.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

from infrahealth.checks.conditions import Condition, FieldType, freeze


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────


class Severity(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> Severity:
        """Case-insensitive lookup. Raises ValueError for unknown levels."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise ValueError(
            f"Unknown severity {value!r} (expected one of {', '.join(m.value for m in cls)})"
        )


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}


class ExecutionStatus(str, Enum):
    """Terminal state of a single plugin invocation."""

    COMPLETED = "Completed"
    ERROR = "Error"
    TIMED_OUT = "TimedOut"


class InvocationState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    ERROR = "Error"
    TIMED_OUT = "TimedOut"


class EvaluationStatus(str, Enum):
    PASS = "Pass"
    WARNING = "Warning"
    FAIL = "Fail"
    ERROR = "Error"

    @property
    def rank(self) -> int:
        return _EVALUATION_RANK[self]


_EVALUATION_RANK = {
    EvaluationStatus.PASS: 0,
    EvaluationStatus.WARNING: 1,
    EvaluationStatus.FAIL: 2,
    EvaluationStatus.ERROR: 3,
}


class RunStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


class IssueStatus(str, Enum):
    """Lifecycle of a tracked issue across runs."""

    OPEN = "Open"
    IN_PROGRESS = "InProgress"
    RESOLVED = "Resolved"
    FALSE_POSITIVE = "FalsePositive"
    IGNORED = "Ignored"

    @classmethod
    def parse(cls, value: Any) -> IssueStatus:
        text = str(value).strip().lower().replace("_", "")
        for member in cls:
            if member.value.lower() == text:
                return member
        raise ValueError(f"Unknown issue status {value!r}")


# ── Helpers ──────────────────────────────────────────────────────────────────


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`: plain dicts and lists, safe for json.dumps."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [thaw(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


# ── Definitions ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Category:
    category_id: str
    name: str = ""
    description: str = ""
    display_order: int = 0
    weight: float | None = None  # None -> scored with the default weight


@dataclass(frozen=True)
class IssueTemplate:
    """Issue blueprint; text fields may contain ``{field}`` placeholders."""

    title: str
    description: str = ""
    severity: Severity | None = None  # None -> the check's severity
    affected_object: str | None = None
    evidence: tuple[str, ...] = ()
    recommendation: str | None = None


@dataclass(frozen=True)
class Rule:
    condition: Condition
    status: EvaluationStatus
    issue: IssueTemplate | None = None


@dataclass(frozen=True)
class CheckDefinition:
    """A single check: what to run and how to judge its output."""

    check_id: str
    name: str
    category: str
    severity: Severity
    plugin: str
    rules: tuple[Rule, ...] = ()
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    fields: Mapping[str, FieldType] | None = None
    description: str = ""
    remediation: str = ""
    kb_articles: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    enabled: bool = True
    version: str = "1.0"


# ── Runtime ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExecutionContext:
    """Read-only inventory snapshot handed to every plugin invocation."""

    target: str
    inventory: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    discovered_at: datetime = field(default_factory=utc_now)

    @classmethod
    def build(cls, target: str, inventory: Mapping[str, Any] | None = None) -> ExecutionContext:
        return cls(target=target, inventory=freeze(inventory or {}))

    def get(self, key: str, default: Any = None) -> Any:
        return self.inventory.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "inventory": thaw(self.inventory),
            "discovered_at": self.discovered_at.isoformat(),
        }


@dataclass(frozen=True)
class RawResult:
    """Unclassified output of one plugin invocation.

    ``fields`` is the open extension map. ``findings`` is set when the
    plugin fanned out over several objects (one mapping per object); it is
    None for single-record results.
    """

    check_id: str
    status: ExecutionStatus
    start_time: datetime
    end_time: datetime
    error_message: str | None = None
    fields: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    findings: tuple[Mapping[str, Any], ...] | None = None

    @property
    def duration_ms(self) -> int:
        return max(0, int((self.end_time - self.start_time).total_seconds() * 1000))

    def envelope(self) -> dict[str, Any]:
        if self.findings is not None:
            finding_count = len(self.findings)
        else:
            finding_count = 1 if self.status is ExecutionStatus.COMPLETED else 0
        return {
            "check_id": self.check_id,
            "execution_status": self.status.value,
            "duration_ms": self.duration_ms,
            "finding_count": finding_count,
        }

    def records(self) -> list[dict[str, Any]]:
        """Field maps the rule engine walks: one per logical finding.

        A single record or an empty fan-out yields just the shared record.
        """
        base = {**self.envelope(), **self.fields}
        if not self.findings:
            return [base]
        return [{**base, **finding} for finding in self.findings]

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_id": self.check_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "fields": thaw(self.fields),
            "findings": thaw(self.findings) if self.findings is not None else None,
        }


@dataclass(frozen=True)
class Issue:
    severity: Severity
    title: str
    description: str
    check_id: str
    affected_object: str | None = None
    evidence: Mapping[str, Any] | None = None
    recommendation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "check_id": self.check_id,
            "affected_object": self.affected_object,
            "evidence": thaw(self.evidence) if self.evidence is not None else None,
            "recommendation": self.recommendation,
        }


@dataclass(frozen=True)
class EvaluatedResult:
    """A raw result after classification against its rule set."""

    definition: CheckDefinition
    status: EvaluationStatus
    raw: RawResult
    issues: tuple[Issue, ...] = ()
    error_message: str | None = None
    # Index of the rule that matched each record; None where no rule matched.
    matched_rules: tuple[int | None, ...] = ()

    @property
    def check_id(self) -> str:
        return self.definition.check_id

    @property
    def category(self) -> str:
        return self.definition.category

    @property
    def start_time(self) -> datetime:
        return self.raw.start_time

    @property
    def end_time(self) -> datetime:
        return self.raw.end_time

    @property
    def duration_ms(self) -> int:
        return self.raw.duration_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_id": self.check_id,
            "check_name": self.definition.name,
            "category": self.category,
            "status": self.status.value,
            "execution_status": self.raw.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "issues": [i.to_dict() for i in self.issues],
        }


# ── Scores ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CategoryScore:
    category_id: str
    value: int
    checks_executed: int
    checks_passed: int
    checks_warning: int
    checks_failed: int
    checks_error: int
    issue_counts: Mapping[str, int]
    deduction: int
    weight: float
    weighted_contribution: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "category_id": self.category_id,
            "value": self.value,
            "checks_executed": self.checks_executed,
            "checks_passed": self.checks_passed,
            "checks_warning": self.checks_warning,
            "checks_failed": self.checks_failed,
            "checks_error": self.checks_error,
            "issue_counts": dict(self.issue_counts),
            "deduction": self.deduction,
            "weight": self.weight,
            "weighted_contribution": round(self.weighted_contribution, 4),
        }


@dataclass(frozen=True)
class ScoreReport:
    overall: int
    categories: tuple[CategoryScore, ...]
    total_weight: float
    warnings: tuple[str, ...] = ()

    def category(self, category_id: str) -> CategoryScore | None:
        return next((c for c in self.categories if c.category_id == category_id), None)

    @property
    def breakdown(self) -> dict[str, float]:
        """Each category's weighted contribution to the overall score."""
        return {c.category_id: c.weighted_contribution for c in self.categories}

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall,
            "total_weight": self.total_weight,
            "categories": [c.to_dict() for c in self.categories],
            "warnings": list(self.warnings),
        }


# ── Runs ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RunSummary:
    run_id: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    target: str = ""
    total_checks: int = 0
    checks_passed: int = 0
    checks_warning: int = 0
    checks_failed: int = 0
    checks_error: int = 0
    issue_counts: Mapping[str, int] = field(
        default_factory=lambda: MappingProxyType({s.value: 0 for s in Severity})
    )
    overall_score: int | None = None
    score: ScoreReport | None = None
    results: tuple[EvaluatedResult, ...] = ()
    error: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def issues(self) -> list[Issue]:
        return [issue for result in self.results for issue in result.issues]

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self, include_results: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "run_id": self.run_id,
            "status": self.status.value,
            "target": self.target,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "total_checks": self.total_checks,
            "checks_passed": self.checks_passed,
            "checks_warning": self.checks_warning,
            "checks_failed": self.checks_failed,
            "checks_error": self.checks_error,
            "issue_counts": dict(self.issue_counts),
            "overall_score": self.overall_score,
            "category_scores": [c.to_dict() for c in self.score.categories] if self.score else [],
            "error": self.error,
            "warnings": list(self.warnings),
        }
        if include_results:
            data["results"] = [r.to_dict() for r in self.results]
        return data
