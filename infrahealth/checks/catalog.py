"""Check catalogue: loads check definitions and categories from YAML/JSON.

A definitions source is a single file or a directory of ``*.yaml``,
``*.yml`` and ``*.json`` files, each shaped like::

    categories:
      - {id: Replication, name: AD Replication, weight: 3}
    checks:
      - id: REP-001
        name: Replication failures
        category: Replication
        severity: High
        plugin: mychecks.replication:probe
        fields: {partner: string, failures: integer}
        rules:
          - when: {field: failures, op: gt, value: 0}
            status: Fail
            issue:
              title: "Replication failing with {partner}"
              affected_object: "{partner}"

Everything that can be validated without running a check is validated
here: unknown severities, statuses, operators and (when ``fields`` is
declared) unknown field references are rejected as ``DefinitionError``.
"""

from __future__ import annotations

import json
import logging
import string
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from infrahealth.checks.conditions import ENVELOPE_FIELDS, FieldType, parse_condition
from infrahealth.checks.models import (
    Category,
    CheckDefinition,
    EvaluationStatus,
    IssueTemplate,
    Rule,
    Severity,
    freeze,
)
from infrahealth.errors import DefinitionError

logger = logging.getLogger(__name__)

DEFINITION_SUFFIXES = (".yaml", ".yml", ".json")

# Placeholders every template may use regardless of the declared fields.
BUILTIN_PLACEHOLDERS = frozenset(ENVELOPE_FIELDS)

_RULE_STATUSES = (EvaluationStatus.PASS, EvaluationStatus.WARNING, EvaluationStatus.FAIL)


# ── Schema ───────────────────────────────────────────────────────────────────


class IssueSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    description: str = ""
    severity: Severity | None = None
    affected_object: str | None = None
    evidence: list[str] = Field(default_factory=list)
    recommendation: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, value: Any) -> Severity | None:
        return None if value is None else Severity.parse(value)


class RuleSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    when: Any = True
    status: EvaluationStatus
    issue: IssueSpec | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value: Any) -> EvaluationStatus:
        text = str(value).strip().lower()
        for status in _RULE_STATUSES:
            if status.value.lower() == text:
                return status
        raise ValueError(
            f"Unknown rule status {value!r} (expected one of {', '.join(s.value for s in _RULE_STATUSES)})"
        )


class CheckSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = ""
    category: str = Field(min_length=1)
    severity: Severity
    plugin: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    field_types: dict[str, FieldType] | None = Field(default=None, alias="fields")
    rules: list[RuleSpec] = Field(default_factory=list)
    description: str = ""
    remediation: str = ""
    kb_articles: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    enabled: bool = True
    version: str = "1.0"

    @field_validator("severity", mode="before")
    @classmethod
    def _parse_severity(cls, value: Any) -> Severity:
        return Severity.parse(value)

    @field_validator("field_types", mode="before")
    @classmethod
    def _normalize_types(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {k: str(v).strip().lower() for k, v in value.items()}
        return value


class CategorySpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    display_order: int = 0
    weight: float | None = Field(default=None, ge=0)


# ── Compilation ──────────────────────────────────────────────────────────────


def _placeholders(text: str | None, where: str) -> set[str]:
    if not text:
        return set()
    try:
        parsed = list(string.Formatter().parse(text))
    except ValueError as exc:
        raise DefinitionError(f"{where}: malformed template {text!r}: {exc}") from exc
    names = set()
    for _, name, _, _ in parsed:
        if name is None:
            continue
        if not name:
            raise DefinitionError(f"{where}: positional placeholder '{{}}' is not supported")
        names.add(name)
    return names


def _check_names(names: Iterable[str], schema: Mapping[str, FieldType] | None, where: str) -> None:
    if schema is None:
        return
    for name in names:
        root = name.split(".", 1)[0].split("[", 1)[0]
        if root not in schema and root not in BUILTIN_PLACEHOLDERS:
            raise DefinitionError(f"{where}: field '{name}' is not declared for this check")


def _compile_issue(spec: IssueSpec, schema: Mapping[str, FieldType] | None, where: str) -> IssueTemplate:
    for attr in ("title", "description", "affected_object", "recommendation"):
        _check_names(_placeholders(getattr(spec, attr), f"{where}.{attr}"), schema, f"{where}.{attr}")
    _check_names(spec.evidence, schema, f"{where}.evidence")
    return IssueTemplate(
        title=spec.title,
        description=spec.description,
        severity=spec.severity,
        affected_object=spec.affected_object,
        evidence=tuple(spec.evidence),
        recommendation=spec.recommendation,
    )


def compile_check(spec: CheckSpec) -> CheckDefinition:
    """Turn a validated spec into a frozen definition with parsed conditions."""
    schema = spec.field_types
    rules = []
    for i, rule in enumerate(spec.rules):
        where = f"{spec.id}.rules[{i}]"
        condition = parse_condition(rule.when, schema, f"{where}.when")
        issue = _compile_issue(rule.issue, schema, f"{where}.issue") if rule.issue else None
        rules.append(Rule(condition=condition, status=rule.status, issue=issue))

    return CheckDefinition(
        check_id=spec.id,
        name=spec.name or spec.id,
        category=spec.category,
        severity=spec.severity,
        plugin=spec.plugin,
        rules=tuple(rules),
        params=freeze(spec.params),
        fields=freeze(schema) if schema is not None else None,
        description=spec.description,
        remediation=spec.remediation,
        kb_articles=tuple(spec.kb_articles),
        tags=tuple(spec.tags),
        enabled=spec.enabled,
        version=spec.version,
    )


def parse_check(raw: Any) -> CheckDefinition:
    """Validate and compile one raw check entry."""
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Check entry must be a mapping, got {type(raw).__name__}")
    try:
        spec = CheckSpec.model_validate(raw)
    except ValidationError as exc:
        raise DefinitionError(f"Invalid check {raw.get('id', '<unnamed>')!r}: {exc}") from exc
    return compile_check(spec)


def parse_category(raw: Any) -> Category:
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Category entry must be a mapping, got {type(raw).__name__}")
    try:
        spec = CategorySpec.model_validate(raw)
    except ValidationError as exc:
        raise DefinitionError(f"Invalid category {raw.get('id', '<unnamed>')!r}: {exc}") from exc
    return Category(
        category_id=spec.id,
        name=spec.name or spec.id,
        description=spec.description,
        display_order=spec.display_order,
        weight=spec.weight,
    )


# ── Catalogue ────────────────────────────────────────────────────────────────


class CheckCatalog:
    """Loads and caches check definitions and categories.

    With ``strict=True`` (the default) any invalid entry rejects the whole
    load. With ``strict=False`` invalid entries are logged and skipped.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        strict: bool = True,
        log: logging.Logger | None = None,
    ) -> None:
        self._path = Path(path) if path is not None else None
        self.strict = strict
        self.log = log or logger
        self._definitions: dict[str, CheckDefinition] = {}
        self._categories: dict[str, Category] = {}
        self._loaded = False

    @classmethod
    def from_documents(
        cls,
        *documents: Mapping[str, Any],
        strict: bool = True,
    ) -> CheckCatalog:
        """Build a catalogue from in-memory documents (no file access)."""
        catalog = cls(path=None, strict=strict)
        for doc in documents:
            catalog._ingest(doc, source="<memory>")
        catalog._loaded = True
        return catalog

    def load(self, force: bool = False) -> list[CheckDefinition]:
        """Read every definitions file and return all definitions."""
        if self._loaded and not force:
            return list(self._definitions.values())
        if self._path is None:
            raise DefinitionError("No definitions path configured")

        self._definitions = {}
        self._categories = {}
        for source in self._sources():
            self._ingest(self._read(source), source=str(source))

        self._loaded = True
        self.log.info(
            "Loaded %d check definitions in %d categories from %s",
            len(self._definitions), len(self.categories), self._path,
        )
        return list(self._definitions.values())

    def reload(self) -> list[CheckDefinition]:
        return self.load(force=True)

    def refresh(self) -> list[CheckDefinition]:
        """Re-read from disk when file-backed; in-memory catalogues are returned as is."""
        if self._path is None:
            return self.load()
        return self.reload()

    @property
    def definitions(self) -> list[CheckDefinition]:
        return self.load()

    @property
    def categories(self) -> dict[str, Category]:
        """Declared categories plus any category referenced only by a check."""
        merged = dict(self._categories)
        for definition in self._definitions.values():
            merged.setdefault(definition.category, Category(category_id=definition.category, weight=None))
        return merged

    def get(self, check_id: str) -> CheckDefinition | None:
        self.load()
        return self._definitions.get(check_id)

    def enabled(self, categories: Iterable[str] | None = None) -> list[CheckDefinition]:
        """Enabled definitions, optionally limited to the given categories."""
        wanted = {c.casefold() for c in categories} if categories else None
        return [
            d for d in self.definitions
            if d.enabled and (wanted is None or d.category.casefold() in wanted)
        ]

    def category_weights(self) -> dict[str, float]:
        """Weights for categories that declare one."""
        return {c.category_id: c.weight for c in self.categories.values() if c.weight is not None}

    def display_order(self) -> dict[str, int]:
        return {c.category_id: c.display_order for c in self.categories.values()}

    # -- internals -------------------------------------------------------------

    def _sources(self) -> list[Path]:
        if self._path is None:
            raise DefinitionError("Catalogue was built from documents and has no path to reload")
        if not self._path.exists():
            raise DefinitionError(f"Definitions path not found: {self._path}")
        if self._path.is_file():
            return [self._path]
        return sorted(p for p in self._path.rglob("*") if p.is_file() and p.suffix.lower() in DEFINITION_SUFFIXES)

    def _read(self, source: Path) -> Any:
        try:
            text = source.read_text(encoding="utf-8")
            if source.suffix.lower() == ".json":
                return json.loads(text)
            return yaml.safe_load(text)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise DefinitionError(f"Failed to parse {source}: {exc}") from exc

    def _ingest(self, doc: Any, source: str) -> None:
        if doc is None:
            return
        if not isinstance(doc, Mapping):
            raise DefinitionError(f"{source}: expected a mapping with 'categories' and/or 'checks'")
        unknown = set(doc) - {"categories", "checks"}
        if unknown:
            raise DefinitionError(f"{source}: unknown top-level keys {sorted(unknown)}")

        for raw in doc.get("categories") or []:
            try:
                category = parse_category(raw)
                if category.category_id in self._categories:
                    raise DefinitionError(f"Duplicate category id '{category.category_id}'")
            except DefinitionError as exc:
                self._reject(exc, source)
                continue
            self._categories[category.category_id] = category

        for raw in doc.get("checks") or []:
            try:
                definition = parse_check(raw)
                if definition.check_id in self._definitions:
                    raise DefinitionError(f"Duplicate check id '{definition.check_id}'")
            except DefinitionError as exc:
                self._reject(exc, source)
                continue
            self._definitions[definition.check_id] = definition

    def _reject(self, exc: DefinitionError, source: str) -> None:
        if self.strict:
            raise DefinitionError(f"{source}: {exc}") from exc
        self.log.warning("Skipping invalid definition in %s: %s", source, exc)
