"""Check pipeline engine: scheduler, rule engine and scorer."""

from .evaluator import Evaluator
from .executor import CheckExecutor, run_batch
from .scoring import Scorer, ScoringConfig, round_half_up
