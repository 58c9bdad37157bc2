from infrahealth.orchestrator.pipeline import Orchestrator, Reporter, exit_code_for

__all__ = ["Orchestrator", "Reporter", "exit_code_for"]
