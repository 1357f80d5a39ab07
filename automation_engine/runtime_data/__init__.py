"""
Runtime Data Module

Manages runtime data for automation runs:
- Variables: per-run VariableStore with template resolution and coercion
- State: ExecutionContext, RunReport, StepRecord, StepOutcome and statuses
"""

from .variables import VariableStore, coerce, to_bool, to_number, to_text
from .state import (
    ExecutionContext,
    RunReport,
    RunState,
    RunStatus,
    StepOutcome,
    StepRecord,
    StepStatus,
)

__all__ = [
    # Variables
    "VariableStore",
    "coerce",
    "to_bool",
    "to_number",
    "to_text",
    # State
    "ExecutionContext",
    "RunReport",
    "RunState",
    "RunStatus",
    "StepOutcome",
    "StepRecord",
    "StepStatus",
]
