"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import pytest

from helpers import resolve_test_plugin
from infrahealth.checks.catalog import CheckCatalog
from infrahealth.checks.models import ExecutionContext
from infrahealth.config import Settings
from infrahealth.engine.executor import CheckExecutor
from infrahealth.plugins.loader import clear_cache


@pytest.fixture(autouse=True)
def _fresh_plugin_cache():
    clear_cache()
    yield
    clear_cache()


@pytest.fixture
def context() -> ExecutionContext:
    return ExecutionContext.build(
        "corp.example.com",
        {
            "domain_controllers": [
                {"hostname": "dc01.corp.example.com", "site": "HQ"},
                {"hostname": "dc02.corp.example.com", "site": "Branch"},
            ],
            "endpoints": ["https://intranet.corp.example.com/health"],
        },
    )


@pytest.fixture
def executor() -> CheckExecutor:
    return CheckExecutor(resolver=resolve_test_plugin, cancel_poll_interval=0.01)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        max_parallel_jobs=4,
        execution_timeout=2.0,
        definitions_path=tmp_path / "checks",
        inventory_path=tmp_path / "inventory.yaml",
        db_path=tmp_path / "infrahealth.db",
    )


@pytest.fixture
def inventory_file(tmp_path: Path) -> Path:
    path = tmp_path / "inventory.yaml"
    path.write_text(
        "target: corp.example.com\n"
        "inventory:\n"
        "  domain_controllers:\n"
        "    - {hostname: dc01.corp.example.com}\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def catalog_factory() -> Callable[..., CheckCatalog]:
    def build(*checks: Mapping[str, Any], categories: list[Mapping[str, Any]] | None = None) -> CheckCatalog:
        return CheckCatalog.from_documents({"categories": categories or [], "checks": list(checks)})

    return build
