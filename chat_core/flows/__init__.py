"""Turn execution built on LangGraph."""

from chat_core.flows.graph import DEFAULT_MAX_STEPS, TurnExecutor, TurnOutcome, run_turn

__all__ = ["DEFAULT_MAX_STEPS", "TurnExecutor", "TurnOutcome", "run_turn"]
