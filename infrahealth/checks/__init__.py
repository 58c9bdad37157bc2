"""Check definitions: domain models, rule conditions, catalogue loading."""

from .catalog import CheckCatalog, parse_check
from .conditions import FieldType, parse_condition
from .models import (
    Category,
    CategoryScore,
    CheckDefinition,
    EvaluatedResult,
    EvaluationStatus,
    ExecutionContext,
    ExecutionStatus,
    InvocationState,
    Issue,
    IssueStatus,
    IssueTemplate,
    RawResult,
    Rule,
    RunStatus,
    RunSummary,
    ScoreReport,
    Severity,
)
