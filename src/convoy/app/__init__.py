"""Application runtime package."""

from convoy.app.bootstrap import build_runtime
from convoy.app.runtime import TurnManager, TurnResult

__all__ = ["TurnManager", "TurnResult", "build_runtime"]
