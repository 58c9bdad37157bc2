from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from infrahealth.checks.models import Severity
from infrahealth.engine.scoring import ScoringConfig

if TYPE_CHECKING:
    from infrahealth.checks.catalog import CheckCatalog


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file.

    Every field can be set as ``INFRAHEALTH_<FIELD>``; mappings are given
    as JSON, e.g. ``INFRAHEALTH_CATEGORY_WEIGHTS='{"DNS": 2}'``.
    """

    model_config = {
        "env_prefix": "INFRAHEALTH_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # Scheduler
    max_parallel_jobs: int = Field(10, ge=1)
    execution_timeout: float = Field(300.0, gt=0)  # seconds per check

    # Inputs
    definitions_path: Path = Path("checks")
    inventory_path: Path = Path("inventory.yaml")
    strict_definitions: bool = True  # False -> skip bad definitions with a warning

    # Storage
    db_path: Path = Path("data/infrahealth.db")
    retention_days: int = Field(90, ge=1)
    enable_auto_cleanup: bool = True

    # Scoring
    severity_weights: dict[str, int] = Field(
        default_factory=lambda: {"Critical": 10, "High": 5, "Medium": 2, "Low": 1}
    )
    category_weights: dict[str, float] = Field(default_factory=dict)  # overrides catalogue weights

    # Exit code 1 when any issue is at or above this severity
    fail_on: Severity = Severity.CRITICAL

    # Logging
    log_level: str = "INFO"

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    @field_validator("fail_on", mode="before")
    @classmethod
    def _parse_fail_on(cls, v: object) -> Severity:
        return Severity.parse(v)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    def scoring_config(self, catalog: CheckCatalog | None = None) -> ScoringConfig:
        """Scoring tables: catalogue category weights, overridden by ``category_weights``."""
        category_weights: dict[str, float] = {}
        display_order: dict[str, int] = {}
        if catalog is not None:
            category_weights.update(catalog.category_weights())
            display_order.update(catalog.display_order())
        category_weights.update(self.category_weights)
        return ScoringConfig(
            severity_weights=self.severity_weights,
            category_weights=category_weights,
            display_order=display_order,
        )
