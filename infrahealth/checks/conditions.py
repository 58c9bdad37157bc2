"""Typed rule conditions: a small AST evaluated against a record of fields.

Conditions are written as plain data in check definitions:

    {field: lag_minutes, op: gt, value: 60}
    {all: [{field: enabled, value: true}, {field: name, op: ne, value: krbtgt}]}
    {any: [...]}
    {not: {...}}
    true

Everything that can be checked without a record is checked by
``parse_condition`` and reported as ``DefinitionError``. Evaluation fails
closed: a missing field or an incomparable value raises
``RuleEvaluationError`` instead of quietly returning False.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Union

from infrahealth.errors import DefinitionError, RuleEvaluationError

MISSING = object()


class FieldType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"
    ANY = "any"


# Fields every record carries besides the plugin's own output.
ENVELOPE_FIELDS: Mapping[str, FieldType] = {
    "check_id": FieldType.STRING,
    "check_name": FieldType.STRING,
    "category": FieldType.STRING,
    "execution_status": FieldType.STRING,
    "duration_ms": FieldType.INTEGER,
    "finding_count": FieldType.INTEGER,
}


ORDERING_OPS = frozenset({"gt", "ge", "lt", "le"})
EQUALITY_OPS = frozenset({"eq", "ne"})
MEMBERSHIP_OPS = frozenset({"in", "not_in"})
CONTAINS_OPS = frozenset({"contains", "not_contains"})
OPERATORS = ORDERING_OPS | EQUALITY_OPS | MEMBERSHIP_OPS | CONTAINS_OPS | {"matches", "exists"}

_COMPARISON_KEYS = frozenset({"field", "op", "value"})


def lookup(record: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted field path, returning ``MISSING`` when absent."""
    if path in record:
        return record[path]
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return MISSING
        current = current[part]
    return current


def freeze(value: Any) -> Any:
    """Recursively turn mappings into read-only proxies and sequences into tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({str(k): freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(freeze(v) for v in value)
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ── AST nodes ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Constant:
    value: bool

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        return self.value

    def fields(self) -> frozenset[str]:
        return frozenset()


@dataclass(frozen=True)
class Comparison:
    field: str
    op: str
    value: Any = None
    pattern: re.Pattern[str] | None = field(default=None, compare=False, repr=False)

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        actual = lookup(record, self.field)

        if self.op == "exists":
            present = actual is not MISSING and actual is not None
            return present is bool(self.value)

        if actual is MISSING:
            raise RuleEvaluationError(f"Field '{self.field}' is not present in the result")

        if self.op == "eq":
            return actual == self.value
        if self.op == "ne":
            return actual != self.value
        if self.op in MEMBERSHIP_OPS:
            found = actual in self.value
            return found if self.op == "in" else not found
        if self.op in ORDERING_OPS:
            return self._compare_order(actual)
        if self.op in CONTAINS_OPS:
            if isinstance(actual, str):
                if not isinstance(self.value, str):
                    raise RuleEvaluationError(
                        f"Field '{self.field}' is a string; '{self.op}' needs a string value"
                    )
                found = self.value in actual
            elif isinstance(actual, (list, tuple, set, frozenset)):
                found = self.value in actual
            else:
                raise RuleEvaluationError(
                    f"Field '{self.field}' ({type(actual).__name__}) does not support '{self.op}'"
                )
            return found if self.op == "contains" else not found
        if self.op == "matches":
            if not isinstance(actual, str):
                raise RuleEvaluationError(
                    f"Field '{self.field}' ({type(actual).__name__}) cannot be matched against a pattern"
                )
            if self.pattern is None:
                raise RuleEvaluationError(f"Field '{self.field}' has no compiled pattern")
            return self.pattern.search(actual) is not None

        raise RuleEvaluationError(f"Unsupported operator '{self.op}'")

    def _compare_order(self, actual: Any) -> bool:
        comparable = (_is_number(actual) and _is_number(self.value)) or (
            isinstance(actual, str) and isinstance(self.value, str)
        )
        if not comparable:
            raise RuleEvaluationError(
                f"Cannot compare field '{self.field}' ({type(actual).__name__}) "
                f"with {self.value!r} using '{self.op}'"
            )
        if self.op == "gt":
            return actual > self.value
        if self.op == "ge":
            return actual >= self.value
        if self.op == "lt":
            return actual < self.value
        return actual <= self.value

    def fields(self) -> frozenset[str]:
        return frozenset({self.field})


@dataclass(frozen=True)
class AllOf:
    conditions: tuple[Condition, ...]

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        return all(c.evaluate(record) for c in self.conditions)

    def fields(self) -> frozenset[str]:
        return frozenset().union(*(c.fields() for c in self.conditions))


@dataclass(frozen=True)
class AnyOf:
    conditions: tuple[Condition, ...]

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        return any(c.evaluate(record) for c in self.conditions)

    def fields(self) -> frozenset[str]:
        return frozenset().union(*(c.fields() for c in self.conditions))


@dataclass(frozen=True)
class Not:
    condition: Condition

    def evaluate(self, record: Mapping[str, Any]) -> bool:
        return not self.condition.evaluate(record)

    def fields(self) -> frozenset[str]:
        return self.condition.fields()


Condition = Union[Constant, Comparison, AllOf, AnyOf, Not]


# ── Parsing ──────────────────────────────────────────────────────────────────


def parse_condition(
    raw: Any,
    schema: Mapping[str, FieldType] | None = None,
    path: str = "when",
) -> Condition:
    """Build a condition tree from its data form.

    When ``schema`` is given, field references and value types are checked
    against it as well.
    """
    if isinstance(raw, bool):
        return Constant(raw)
    if not isinstance(raw, Mapping) or not raw:
        raise DefinitionError(f"{path}: condition must be a mapping or a boolean, got {raw!r}")

    keys = set(raw)
    for combinator in ("all", "any"):
        if combinator in keys:
            if keys != {combinator}:
                raise DefinitionError(f"{path}: '{combinator}' cannot be mixed with {sorted(keys - {combinator})}")
            items = raw[combinator]
            if not isinstance(items, list) or not items:
                raise DefinitionError(f"{path}.{combinator}: expected a non-empty list")
            children = tuple(
                parse_condition(item, schema, f"{path}.{combinator}[{i}]") for i, item in enumerate(items)
            )
            return AllOf(children) if combinator == "all" else AnyOf(children)

    if "not" in keys:
        if keys != {"not"}:
            raise DefinitionError(f"{path}: 'not' cannot be mixed with {sorted(keys - {'not'})}")
        return Not(parse_condition(raw["not"], schema, f"{path}.not"))

    if "field" not in keys:
        raise DefinitionError(f"{path}: unknown condition keys {sorted(keys)}")
    unknown = keys - _COMPARISON_KEYS
    if unknown:
        raise DefinitionError(f"{path}: unknown comparison keys {sorted(unknown)}")

    return _parse_comparison(raw, schema, path)


def _parse_comparison(
    raw: Mapping[str, Any],
    schema: Mapping[str, FieldType] | None,
    path: str,
) -> Comparison:
    name = raw["field"]
    if not isinstance(name, str) or not name.strip():
        raise DefinitionError(f"{path}: 'field' must be a non-empty string")
    name = name.strip()

    op = str(raw.get("op", "eq")).strip().lower()
    if op not in OPERATORS:
        raise DefinitionError(f"{path}: unknown operator '{op}' (expected one of {sorted(OPERATORS)})")

    if op == "exists":
        value = raw.get("value", True)
        if not isinstance(value, bool):
            raise DefinitionError(f"{path}: 'exists' takes a boolean value")
    elif "value" not in raw:
        raise DefinitionError(f"{path}: operator '{op}' requires a 'value'")
    else:
        value = raw["value"]

    pattern = None
    if op in MEMBERSHIP_OPS:
        if not isinstance(value, list):
            raise DefinitionError(f"{path}: '{op}' requires a list value")
        value = freeze(value)
    elif op in ORDERING_OPS:
        if not (_is_number(value) or isinstance(value, str)):
            raise DefinitionError(f"{path}: '{op}' requires a number or string value")
    elif op == "matches":
        if not isinstance(value, str):
            raise DefinitionError(f"{path}: 'matches' requires a regular expression string")
        try:
            pattern = re.compile(value)
        except re.error as exc:
            raise DefinitionError(f"{path}: invalid pattern {value!r}: {exc}") from exc

    if schema is not None:
        _check_against_schema(name, op, value, schema, path)

    return Comparison(field=name, op=op, value=freeze(value), pattern=pattern)


def _value_fits(value: Any, field_type: FieldType) -> bool:
    if value is None or field_type is FieldType.ANY:
        return True
    if field_type is FieldType.STRING:
        return isinstance(value, str)
    if field_type is FieldType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if field_type is FieldType.NUMBER:
        return _is_number(value)
    if field_type is FieldType.BOOLEAN:
        return isinstance(value, bool)
    return isinstance(value, (list, tuple))


def _check_against_schema(
    name: str,
    op: str,
    value: Any,
    schema: Mapping[str, FieldType],
    path: str,
) -> None:
    schema = {**ENVELOPE_FIELDS, **schema}
    root = name.split(".", 1)[0]
    if name not in schema and root not in schema:
        raise DefinitionError(f"{path}: field '{name}' is not declared for this check")
    if name not in schema:
        # Nested path under a declared field; only its root is typed.
        return

    field_type = schema[name]
    if field_type is FieldType.ANY or op == "exists":
        return

    if op in ORDERING_OPS:
        ok = field_type in (FieldType.INTEGER, FieldType.NUMBER) and _is_number(value)
        ok = ok or (field_type is FieldType.STRING and isinstance(value, str))
    elif op in EQUALITY_OPS:
        ok = _value_fits(value, FieldType.NUMBER if field_type is FieldType.INTEGER else field_type)
    elif op in MEMBERSHIP_OPS:
        ok = field_type is not FieldType.LIST and all(_value_fits(v, field_type) for v in value)
    elif op in CONTAINS_OPS:
        ok = field_type is FieldType.LIST or (field_type is FieldType.STRING and isinstance(value, str))
    else:  # matches
        ok = field_type is FieldType.STRING

    if not ok:
        raise DefinitionError(
            f"{path}: operator '{op}' with value {value!r} does not fit field '{name}' of type {field_type.value}"
        )
