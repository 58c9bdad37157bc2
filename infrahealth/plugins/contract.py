"""Plugin contract: the interface every check satisfies.

A plugin is any callable ``plugin(context, call)`` (plain function or
coroutine function) that returns one of:

- a mapping: a single record of named fields;
- an iterable of mappings: one finding per scanned object (fan-out);
- ``None``: nothing to report, treated as an empty record.

Plugins must treat ``context`` as read-only, should stop early once
``call.cancelled`` is set, and may be abandoned mid-flight when their
deadline passes.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from infrahealth.checks.models import ExecutionContext, freeze
from infrahealth.errors import PluginError

PluginOutput = Union[Mapping[str, Any], Iterable[Mapping[str, Any]], None]


@dataclass
class PluginCall:
    """Per-invocation handle: params, deadline and the stop request."""

    check_id: str
    params: Mapping[str, Any]
    deadline: float  # time.monotonic() value
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise PluginError(f"{self.check_id}: cancelled")


class Plugin(Protocol):
    def __call__(self, context: ExecutionContext, call: PluginCall) -> PluginOutput: ...


def normalize_output(
    output: Any,
) -> tuple[Mapping[str, Any], tuple[Mapping[str, Any], ...] | None]:
    """Split plugin output into ``(fields, findings)``.

    Raises PluginError for anything that is not a mapping, an iterable of
    mappings or None.
    """
    if output is None:
        return freeze({}), None
    if isinstance(output, Mapping):
        return freeze(output), None
    if isinstance(output, (str, bytes)) or not isinstance(output, Iterable):
        raise PluginError(f"Plugin returned unsupported type {type(output).__name__}")

    findings = []
    for i, item in enumerate(output):
        if not isinstance(item, Mapping):
            raise PluginError(f"Finding #{i} is {type(item).__name__}, expected a mapping")
        findings.append(freeze(item))
    return freeze({}), tuple(findings)
