"""
Automation Engine

Runs user-authored automations (ordered, typed steps with nested control flow)
as deterministic, cancellable runs that produce a Run Report.
"""

from .cancellation import CancellationToken
from .config import EngineConfig
from .control_flow import ControlFlowEvaluator
from .definition import Automation, Branch, Step, Trigger, TriggerSource
from .effects import (
    DeviceActionKind,
    EffectAdapter,
    MessageKind,
    NullEffectAdapter,
    WebhookResponse,
)
from .engine import AutomationEngine, run_automation
from .errors import (
    AutomationError,
    ChildStepFailed,
    EffectAdapterError,
    EngineBusy,
    ExpressionError,
    InternalError,
    InvalidAutomation,
    LoopBoundExceeded,
    RunCancelled,
    StepValidationError,
    TypeMismatch,
    UndefinedVariable,
    UnknownStepType,
    UnresolvedVariable,
)
from .expressions import ConditionExpression
from .registry import StepRegistry, create_default_registry
from .runtime_data import (
    ExecutionContext,
    RunReport,
    RunState,
    RunStatus,
    StepOutcome,
    StepRecord,
    StepStatus,
    VariableStore,
)
from .steps import FunctionStepHandler, StepConfig, StepHandler

__version__ = "0.1.0"

__all__ = [
    "AutomationEngine",
    "run_automation",
    "Automation",
    "Step",
    "Branch",
    "Trigger",
    "TriggerSource",
    "CancellationToken",
    "EngineConfig",
    "ControlFlowEvaluator",
    "ConditionExpression",
    "StepRegistry",
    "create_default_registry",
    "StepHandler",
    "StepConfig",
    "FunctionStepHandler",
    "EffectAdapter",
    "NullEffectAdapter",
    "MessageKind",
    "DeviceActionKind",
    "WebhookResponse",
    "ExecutionContext",
    "VariableStore",
    "RunReport",
    "RunState",
    "RunStatus",
    "StepOutcome",
    "StepRecord",
    "StepStatus",
    "AutomationError",
    "InvalidAutomation",
    "EngineBusy",
    "UnknownStepType",
    "StepValidationError",
    "UnresolvedVariable",
    "UndefinedVariable",
    "TypeMismatch",
    "ExpressionError",
    "LoopBoundExceeded",
    "EffectAdapterError",
    "RunCancelled",
    "ChildStepFailed",
    "InternalError",
]
