"""Rule engine: classifies raw results and materializes issues.

For each record of a raw result the rule set is walked in declared order
and the first matching rule decides the record's status and (optionally)
its single issue. Later rules are never evaluated once one matches, so a
specific exception can sit in front of a general threshold.
"""

from __future__ import annotations

import logging
import string
from collections.abc import Container, Iterable, Mapping, Sequence
from typing import Any

from infrahealth.checks.conditions import ENVELOPE_FIELDS, MISSING, lookup
from infrahealth.checks.models import (
    CheckDefinition,
    EvaluatedResult,
    EvaluationStatus,
    ExecutionStatus,
    Issue,
    IssueTemplate,
    RawResult,
    Rule,
    Severity,
    freeze,
)
from infrahealth.errors import RuleEvaluationError

logger = logging.getLogger(__name__)

# Category for results whose check id matches no loaded definition.
ORPHAN_CATEGORY = "Uncategorized"


class _FieldFormatter(string.Formatter):
    """str.format over a record, resolving dotted paths and failing closed."""

    def get_field(self, field_name: str, args: Sequence[Any], kwargs: Mapping[str, Any]) -> tuple[Any, str]:
        value = lookup(kwargs, field_name)
        if value is MISSING:
            raise RuleEvaluationError(f"Template placeholder '{field_name}' is not present in the result")
        return value, field_name


_formatter = _FieldFormatter()


def render(template: str | None, record: Mapping[str, Any]) -> str | None:
    if template is None:
        return None
    try:
        return _formatter.vformat(template, (), record)
    except RuleEvaluationError:
        raise
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise RuleEvaluationError(f"Cannot render template {template!r}: {e}") from e


class Evaluator:
    """Deterministic, side-effect-free classification of raw results."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self.log = log or logger

    def evaluate(self, raw: RawResult, definition: CheckDefinition) -> EvaluatedResult:
        """One raw result in, one evaluated result out."""
        if raw.check_id != definition.check_id:
            return self._error_result(
                raw, definition,
                f"Result for '{raw.check_id}' does not belong to check '{definition.check_id}'",
            )

        if raw.status is not ExecutionStatus.COMPLETED:
            return self._execution_failed(raw, definition)

        # An empty fan-out is walked once over its shared record, where only
        # rules on fields that record carries can apply.
        empty_fanout = raw.findings is not None and not raw.findings

        statuses: list[EvaluationStatus] = []
        issues: list[Issue] = []
        matched: list[int | None] = []
        try:
            for record in raw.records():
                record = {
                    **record,
                    "check_name": definition.name,
                    "category": definition.category,
                }
                rules = _rules_within(definition, record) if empty_fanout else None
                status, issue, index = self._walk(definition, record, rules)
                statuses.append(status)
                matched.append(index)
                if issue is not None:
                    issues.append(issue)
        except RuleEvaluationError as e:
            return self._error_result(raw, definition, str(e))

        worst = max(statuses, key=lambda s: s.rank)
        return EvaluatedResult(
            definition=definition,
            status=worst,
            raw=raw,
            issues=tuple(issues),
            matched_rules=tuple(matched),
        )

    def evaluate_batch(
        self,
        raws: Iterable[RawResult],
        definitions: Iterable[CheckDefinition],
    ) -> list[EvaluatedResult]:
        """Correlate raw results to definitions by check id and evaluate each.

        A raw result with no matching definition fails closed as ``Error``.
        """
        by_id: dict[str, CheckDefinition] = {}
        for d in definitions:
            by_id[d.check_id] = d

        evaluated = []
        for raw in raws:
            definition = by_id.get(raw.check_id)
            if definition is None:
                self.log.error("No loaded definition for result '%s'", raw.check_id)
                evaluated.append(self._error_result(
                    raw, orphan_definition(raw.check_id),
                    f"No loaded definition matches check id '{raw.check_id}'",
                ))
                continue
            evaluated.append(self.evaluate(raw, definition))
        return evaluated

    # -- internals -------------------------------------------------------------

    def _walk(
        self,
        definition: CheckDefinition,
        record: Mapping[str, Any],
        rules: Iterable[tuple[int, Rule]] | None = None,
    ) -> tuple[EvaluationStatus, Issue | None, int | None]:
        for index, rule in rules if rules is not None else enumerate(definition.rules):
            if not rule.condition.evaluate(record):
                continue
            issue = None
            if rule.issue is not None:
                issue = self._instantiate(rule.issue, definition, record)
            return rule.status, issue, index
        return EvaluationStatus.PASS, None, None

    def _instantiate(
        self,
        template: IssueTemplate,
        definition: CheckDefinition,
        record: Mapping[str, Any],
    ) -> Issue:
        if template.evidence:
            evidence: dict[str, Any] = {}
            for name in template.evidence:
                value = lookup(record, name)
                if value is MISSING:
                    raise RuleEvaluationError(f"Evidence field '{name}' is not present in the result")
                evidence[name] = value
        else:
            evidence = {k: v for k, v in record.items() if k not in ENVELOPE_FIELDS}

        return Issue(
            severity=template.severity or definition.severity,
            title=render(template.title, record) or definition.name,
            description=render(template.description, record) or "",
            check_id=definition.check_id,
            affected_object=render(template.affected_object, record),
            evidence=freeze(evidence) if evidence else None,
            recommendation=render(template.recommendation, record) or (definition.remediation or None),
        )

    def _execution_failed(self, raw: RawResult, definition: CheckDefinition) -> EvaluatedResult:
        """Rules on ``execution_status`` (and other envelope fields only) get the
        first say; the Critical default applies when none of them matches.
        """
        rules = [
            (index, rule) for index, rule in _rules_within(definition, ENVELOPE_FIELDS)
            if "execution_status" in rule.condition.fields()
        ]
        if rules:
            record = {**raw.envelope(), "check_name": definition.name, "category": definition.category}
            try:
                status, matched_issue, index = self._walk(definition, record, rules)
            except RuleEvaluationError as e:
                return self._error_result(raw, definition, str(e))
            if index is not None:
                return EvaluatedResult(
                    definition=definition,
                    status=status,
                    raw=raw,
                    issues=(matched_issue,) if matched_issue is not None else (),
                    matched_rules=(index,),
                    error_message=raw.error_message,
                )

        issue = Issue(
            severity=Severity.CRITICAL,
            title="Check execution failed",
            description=(
                f"{definition.name} did not complete ({raw.status.value})"
                + (f": {raw.error_message}" if raw.error_message else "")
            ),
            check_id=definition.check_id,
            evidence=freeze({"execution_status": raw.status.value, "error_message": raw.error_message}),
        )
        return EvaluatedResult(
            definition=definition,
            status=EvaluationStatus.FAIL,
            raw=raw,
            issues=(issue,),
            error_message=raw.error_message,
        )

    def _error_result(self, raw: RawResult, definition: CheckDefinition, message: str) -> EvaluatedResult:
        self.log.warning("%s: rule evaluation failed: %s", definition.check_id, message)
        issue = Issue(
            severity=definition.severity,
            title="Rule evaluation failed",
            description=message,
            check_id=definition.check_id,
        )
        return EvaluatedResult(
            definition=definition,
            status=EvaluationStatus.ERROR,
            raw=raw,
            issues=(issue,),
            error_message=message,
        )


def _rules_within(definition: CheckDefinition, names: Container[str]) -> list[tuple[int, Rule]]:
    """Rules that read at least one field, every one of them rooted in ``names``."""
    selected = []
    for index, rule in enumerate(definition.rules):
        roots = {path.split(".", 1)[0] for path in rule.condition.fields()}
        if roots and all(root in names for root in roots):
            selected.append((index, rule))
    return selected


def orphan_definition(check_id: str) -> CheckDefinition:
    """Placeholder definition for a result nobody claimed."""
    return CheckDefinition(
        check_id=check_id,
        name=check_id,
        category=ORPHAN_CATEGORY,
        severity=Severity.CRITICAL,
        plugin="",
    )
