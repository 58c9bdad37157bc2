"""Test plugins and builders shared by the test modules."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any

from infrahealth.checks.catalog import parse_check
from infrahealth.checks.models import (
    CheckDefinition,
    ExecutionStatus,
    RawResult,
    freeze,
    utc_now,
)
from infrahealth.errors import PluginError

# ── Test plugins ─────────────────────────────────────────────────────────────


def ok_plugin(context, call):
    return {"value": 1}


def failing_plugin(context, call):
    raise RuntimeError("boom")


def sleepy_plugin(context, call):
    time.sleep(float(call.params.get("sleep", 5)))
    return {"value": 1}


def stubborn_plugin(context, call):
    """Ignores the cancellation flag entirely."""
    end = time.monotonic() + float(call.params.get("sleep", 5))
    while time.monotonic() < end:
        time.sleep(0.01)
    return {"value": 1}


def echo_plugin(context, call):
    """Returns whatever the definition put in params['output']."""
    return call.params.get("output")


async def async_ok_plugin(context, call):
    return {"value": 2}


async def async_sleepy_plugin(context, call):
    import asyncio

    await asyncio.sleep(float(call.params.get("sleep", 5)))
    return {"value": 2}


TEST_PLUGINS: dict[str, Callable[..., Any]] = {
    "test:ok": ok_plugin,
    "test:fail": failing_plugin,
    "test:sleep": sleepy_plugin,
    "test:stubborn": stubborn_plugin,
    "test:echo": echo_plugin,
    "test:async_ok": async_ok_plugin,
    "test:async_sleep": async_sleepy_plugin,
}


def resolve_test_plugin(ref: str) -> Callable[..., Any]:
    try:
        return TEST_PLUGINS[ref]
    except KeyError:
        raise PluginError(f"Unknown test plugin '{ref}'") from None


# ── Builders ─────────────────────────────────────────────────────────────────


def make_definition(
    check_id: str = "CHK-001",
    *,
    category: str = "Core",
    severity: str = "High",
    plugin: str = "test:ok",
    rules: list[dict[str, Any]] | None = None,
    params: Mapping[str, Any] | None = None,
    **extra: Any,
) -> CheckDefinition:
    raw: dict[str, Any] = {
        "id": check_id,
        "category": category,
        "severity": severity,
        "plugin": plugin,
        "rules": rules or [],
        "params": dict(params or {}),
    }
    raw.update(extra)
    return parse_check(raw)


def make_raw(
    check_id: str = "CHK-001",
    status: ExecutionStatus = ExecutionStatus.COMPLETED,
    fields: Mapping[str, Any] | None = None,
    findings: list[Mapping[str, Any]] | None = None,
    error: str | None = None,
) -> RawResult:
    now = utc_now()
    return RawResult(
        check_id=check_id,
        status=status,
        start_time=now,
        end_time=now,
        error_message=error,
        fields=freeze(fields or {}),
        findings=freeze(findings) if findings is not None else None,
    )


FAIL_ON_FLAG = {
    "when": {"field": "bad", "op": "eq", "value": True},
    "status": "Fail",
    "issue": {"title": "Bad thing on {name}", "affected_object": "{name}"},
}


