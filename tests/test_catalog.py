"""Tests for check definition loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from infrahealth.checks.catalog import CheckCatalog, parse_check
from infrahealth.checks.conditions import FieldType
from infrahealth.checks.models import EvaluationStatus, Severity
from infrahealth.errors import DefinitionError

REPLICATION_YAML = """
categories:
  - {id: Replication, name: AD Replication, display_order: 1, weight: 3}
  - {id: DNS, display_order: 2}
checks:
  - id: REP-001
    name: Replication failures
    category: Replication
    severity: high
    plugin: mychecks.replication:probe
    fields: {partner: string, failures: integer}
    rules:
      - when: {field: failures, op: gt, value: 0}
        status: fail
        issue:
          title: "Replication failing with {partner}"
          affected_object: "{partner}"
          evidence: [failures]
  - id: DNS-001
    category: DNS
    severity: Medium
    plugin: builtin:dns
    enabled: false
"""


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestParseCheck:
    def test_compiles_rules(self) -> None:
        d = parse_check({
            "id": "C1", "category": "Core", "severity": "critical", "plugin": "builtin:tcp",
            "rules": [{"when": {"field": "open", "value": False}, "status": "Fail",
                       "issue": {"title": "closed", "severity": "low"}}],
        })
        assert d.name == "C1"
        assert d.severity is Severity.CRITICAL
        assert d.rules[0].status is EvaluationStatus.FAIL
        assert d.rules[0].issue.severity is Severity.LOW

    def test_definitions_are_frozen(self) -> None:
        d = parse_check({"id": "C1", "category": "Core", "severity": "Low", "plugin": "x:y",
                         "params": {"targets": ["a", "b"]}})
        assert d.params["targets"] == ("a", "b")
        with pytest.raises(TypeError):
            d.params["targets"] = ()  # type: ignore[index]

    def test_field_types_normalized(self) -> None:
        d = parse_check({"id": "C1", "category": "Core", "severity": "Low", "plugin": "x:y",
                         "fields": {"lag": "Integer"}})
        assert d.fields == {"lag": FieldType.INTEGER}

    @pytest.mark.parametrize("patch", [
        {"severity": "Urgent"},
        {"plugin": ""},
        {"rules": [{"when": True, "status": "Error"}]},
        {"rules": [{"when": True, "status": "Fail", "issue": {"title": "x", "severity": "Severe"}}]},
        {"rules": [{"when": {"field": "x", "op": "near", "value": 1}, "status": "Fail"}]},
        {"fields": {"x": "integer"}, "rules": [{"when": {"field": "y", "value": 1}, "status": "Fail"}]},
        {"fields": {"x": "integer"},
         "rules": [{"when": True, "status": "Fail", "issue": {"title": "{y} broke"}}]},
        {"rules": [{"when": True, "status": "Fail", "issue": {"title": "{} broke"}}]},
        {"unexpected": 1},
    ])
    def test_rejects_invalid(self, patch) -> None:
        raw = {"id": "C1", "category": "Core", "severity": "High", "plugin": "x:y"}
        raw.update(patch)
        with pytest.raises(DefinitionError):
            parse_check(raw)

    def test_builtin_placeholders_allowed_with_schema(self) -> None:
        parse_check({
            "id": "C1", "category": "Core", "severity": "High", "plugin": "x:y",
            "fields": {"lag": "integer"},
            "rules": [{"when": True, "status": "Warning",
                       "issue": {"title": "{check_name} in {category}: {lag}"}}],
        })


class TestCheckCatalog:
    def test_load_yaml(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "checks" / "ad.yaml", REPLICATION_YAML)
        catalog = CheckCatalog(path.parent)
        defs = catalog.load()
        assert {d.check_id for d in defs} == {"REP-001", "DNS-001"}
        assert [d.check_id for d in catalog.enabled()] == ["REP-001"]
        assert catalog.category_weights() == {"Replication": 3.0}
        assert catalog.display_order() == {"Replication": 1, "DNS": 2}

    def test_directory_with_json_and_nested_files(self, tmp_path: Path) -> None:
        _write(tmp_path / "checks" / "ad.yaml", REPLICATION_YAML)
        _write(tmp_path / "checks" / "extra" / "web.json", json.dumps({
            "checks": [{"id": "WEB-001", "category": "Web", "severity": "Low", "plugin": "builtin:http"}],
        }))
        _write(tmp_path / "checks" / "notes.txt", "ignored")
        catalog = CheckCatalog(tmp_path / "checks")
        assert catalog.get("WEB-001") is not None
        assert len(catalog.definitions) == 3

    def test_enabled_filters_by_category_case_insensitive(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "ad.yaml", REPLICATION_YAML)
        catalog = CheckCatalog(path)
        assert [d.check_id for d in catalog.enabled(["replication"])] == ["REP-001"]
        assert catalog.enabled(["DNS"]) == []

    def test_undeclared_category_is_registered(self) -> None:
        catalog = CheckCatalog.from_documents({"checks": [
            {"id": "C1", "category": "Backup", "severity": "Low", "plugin": "x:y"},
        ]})
        assert "Backup" in catalog.categories
        assert catalog.categories["Backup"].weight is None
        assert catalog.category_weights() == {}

    def test_duplicate_ids_rejected(self) -> None:
        doc = {"checks": [
            {"id": "C1", "category": "Core", "severity": "Low", "plugin": "x:y"},
            {"id": "C1", "category": "Core", "severity": "High", "plugin": "x:z"},
        ]}
        with pytest.raises(DefinitionError, match="Duplicate"):
            CheckCatalog.from_documents(doc)

    def test_lenient_mode_skips_bad_entries(self, tmp_path: Path, caplog) -> None:
        doc = {"checks": [
            {"id": "C1", "category": "Core", "severity": "Low", "plugin": "x:y"},
            {"id": "C2", "category": "Core", "severity": "Bogus", "plugin": "x:y"},
        ]}
        catalog = CheckCatalog.from_documents(doc, strict=False)
        assert [d.check_id for d in catalog.definitions] == ["C1"]
        assert "Skipping invalid definition" in caplog.text

    def test_unknown_top_level_key(self) -> None:
        with pytest.raises(DefinitionError, match="top-level"):
            CheckCatalog.from_documents({"checkz": []})

    def test_missing_path(self, tmp_path: Path) -> None:
        with pytest.raises(DefinitionError, match="not found"):
            CheckCatalog(tmp_path / "nope").load()

    def test_unparseable_file(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "bad.yaml", "checks: [unclosed")
        with pytest.raises(DefinitionError, match="Failed to parse"):
            CheckCatalog(path).load()

    def test_reload_picks_up_changes(self, tmp_path: Path) -> None:
        path = _write(tmp_path / "ad.yaml", REPLICATION_YAML)
        catalog = CheckCatalog(path)
        assert len(catalog.load()) == 2
        _write(path, "checks: []\n")
        assert len(catalog.load()) == 2  # cached
        assert catalog.refresh() == []

    def test_in_memory_catalogue_has_no_sources(self) -> None:
        catalog = CheckCatalog.from_documents({"checks": []})
        with pytest.raises(DefinitionError, match="no path to reload"):
            catalog._sources()
        assert catalog.refresh() == []

    def test_shipped_definitions_load(self) -> None:
        shipped = Path(__file__).parent.parent / "checks"
        catalog = CheckCatalog(shipped)
        assert {d.category for d in catalog.load()} == {"DNS", "Web", "Certificates", "Network"}
