"""Inventory-file discovery: reads the target inventory from YAML or JSON.

Document shape::

    target: corp.example.com
    inventory:
      domain_controllers:
        - {hostname: dc01.corp.example.com, site: HQ}
      endpoints:
        - https://intranet.corp.example.com/health
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

import yaml

from infrahealth.checks.models import ExecutionContext
from infrahealth.errors import DiscoveryError

logger = logging.getLogger(__name__)


class Discovery(Protocol):
    def discover(self) -> ExecutionContext: ...


class StaticDiscovery:
    """Fixed inventory, handy for embedding and tests."""

    def __init__(self, target: str, inventory: dict[str, Any] | None = None) -> None:
        self._context = ExecutionContext.build(target, inventory)

    def discover(self) -> ExecutionContext:
        return self._context


class InventoryFileDiscovery:
    """Reads a fresh snapshot from disk on every ``discover()``."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def discover(self) -> ExecutionContext:
        if not self.path.exists():
            raise DiscoveryError(f"Inventory file not found: {self.path}")

        try:
            text = self.path.read_text(encoding="utf-8")
            if self.path.suffix.lower() == ".json":
                raw = json.loads(text)
            else:
                raw = yaml.safe_load(text)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise DiscoveryError(f"Failed to parse inventory {self.path}: {e}") from e

        if not isinstance(raw, dict):
            raise DiscoveryError(f"Inventory {self.path} must be a mapping")
        target = raw.get("target")
        if not target or not isinstance(target, str):
            raise DiscoveryError(f"Inventory {self.path} has no 'target'")
        inventory = raw.get("inventory") or {}
        if not isinstance(inventory, dict):
            raise DiscoveryError(f"Inventory {self.path}: 'inventory' must be a mapping")

        logger.info("Discovered target %s (%d inventory keys)", target, len(inventory))
        return ExecutionContext.build(target, inventory)
