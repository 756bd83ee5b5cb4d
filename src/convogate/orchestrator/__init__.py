"""Completion orchestrator: streaming rounds and the tool loop."""

from .config import HookCallable, Hooks, OrchestratorConfig
from .core import Orchestrator, TurnStream

__all__ = ["Orchestrator", "OrchestratorConfig", "TurnStream", "HookCallable", "Hooks"]
