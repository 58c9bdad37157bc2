"""Resolve plugin references from check definitions to callables.

References take two forms:

- ``builtin:<name>``: one of the probes in :mod:`infrahealth.plugins.builtin`;
- ``package.module:attribute``: imported lazily on first use.
"""

from __future__ import annotations

import importlib
import logging
import threading
from typing import Any

from infrahealth.errors import PluginError
from infrahealth.plugins.contract import Plugin

logger = logging.getLogger(__name__)

_cache: dict[str, Plugin] = {}
_lock = threading.Lock()


def resolve_plugin(ref: str) -> Plugin:
    """Return the callable behind ``ref``. Raises PluginError if it cannot be found."""
    with _lock:
        cached = _cache.get(ref)
    if cached is not None:
        return cached

    plugin = _resolve(ref.strip())
    with _lock:
        _cache[ref] = plugin
    return plugin


def clear_cache() -> None:
    with _lock:
        _cache.clear()


def _resolve(ref: str) -> Plugin:
    if ref.startswith("builtin:"):
        from infrahealth.plugins.builtin import BUILTIN_PLUGINS

        name = ref.split(":", 1)[1]
        try:
            return BUILTIN_PLUGINS[name]
        except KeyError:
            raise PluginError(
                f"Unknown builtin plugin '{name}' (available: {', '.join(sorted(BUILTIN_PLUGINS))})"
            ) from None

    module_name, sep, attr_path = ref.partition(":")
    if not sep or not module_name or not attr_path:
        raise PluginError(f"Invalid plugin reference '{ref}' (expected 'module:attribute' or 'builtin:name')")

    try:
        target: Any = importlib.import_module(module_name)
    except Exception as e:
        raise PluginError(f"Cannot import plugin module '{module_name}': {type(e).__name__}: {e}") from e

    for part in attr_path.split("."):
        try:
            target = getattr(target, part)
        except AttributeError:
            raise PluginError(f"Plugin '{ref}' not found: '{part}' missing") from None

    if not callable(target):
        raise PluginError(f"Plugin '{ref}' is not callable")
    logger.debug("Resolved plugin %s", ref)
    return target
