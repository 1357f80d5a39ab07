"""Exception taxonomy for the automation engine."""

from typing import Any, Dict, List, Optional


class AutomationError(Exception):
    """Base exception for all automation engine errors."""

    code = "AutomationError"

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.step_id = step_id
        self.details = details or {}


class InvalidAutomation(AutomationError):
    """Raised when an automation or step record is structurally malformed."""

    code = "InvalidAutomation"


class EngineBusy(AutomationError):
    """Raised when an engine that is already running is started again."""

    code = "EngineBusy"


class UnknownStepType(AutomationError):
    """Raised when no handler is registered for a step type."""

    code = "UnknownStepType"

    def __init__(self, step_type: str, step_id: Optional[str] = None):
        super().__init__(f"Unknown step type: '{step_type}'", step_id)
        self.step_type = step_type


class StepValidationError(AutomationError):
    """Raised when a step config fails shape validation before dispatch."""

    code = "ValidationError"

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, step_id, {"errors": errors or []})
        self.errors = errors or []


class UnresolvedVariable(AutomationError):
    """Raised when a template or expression references a missing variable."""

    code = "UnresolvedVariable"

    def __init__(self, name: str, step_id: Optional[str] = None):
        super().__init__(f"Unresolved variable reference '{name}'", step_id)
        self.name = name


class UndefinedVariable(AutomationError):
    """Raised when get_variable reads a missing variable without a default."""

    code = "UndefinedVariable"

    def __init__(self, name: str, step_id: Optional[str] = None):
        super().__init__(f"Variable '{name}' is not defined", step_id)
        self.name = name


class TypeMismatch(AutomationError):
    """Raised when a value cannot be coerced to the type a step needs."""

    code = "TypeMismatch"

    def __init__(
        self,
        message: str,
        value: Any = None,
        expected: Optional[str] = None,
        step_id: Optional[str] = None,
    ):
        super().__init__(message, step_id)
        self.value = value
        self.expected = expected


class ExpressionError(AutomationError):
    """Raised when a condition expression is outside the supported grammar."""

    code = "ExpressionError"

    def __init__(self, message: str, expression: Optional[str] = None):
        super().__init__(message)
        self.expression = expression


class LoopBoundExceeded(AutomationError):
    """Raised when a loop would run past the safety ceiling."""

    code = "LoopBoundExceeded"

    def __init__(self, limit: int, step_id: Optional[str] = None):
        super().__init__(f"Loop exceeded the iteration ceiling of {limit}", step_id)
        self.limit = limit


class EffectAdapterError(AutomationError):
    """Raised when an effect adapter call fails, times out or is refused."""

    code = "EffectAdapterError"

    def __init__(
        self,
        message: str,
        capability: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        step_id: Optional[str] = None,
    ):
        super().__init__(message, step_id)
        self.capability = capability
        self.original_error = original_error


class RunCancelled(AutomationError):
    """Raised inside a run when the cancellation token has been signalled."""

    code = "Cancelled"

    def __init__(self, message: str = "Run was cancelled", step_id: Optional[str] = None):
        super().__init__(message, step_id)


class ChildStepFailed(AutomationError):
    """Raised by a control-flow step when one of its children failed fatally."""

    code = "ChildStepFailed"

    def __init__(self, child_id: str, cause: AutomationError, step_id: Optional[str] = None):
        super().__init__(f"Child step '{child_id}' failed: {cause.message}", step_id)
        self.child_id = child_id
        self.cause = cause


class InternalError(AutomationError):
    """Wraps an unexpected exception raised by a step handler."""

    code = "InternalError"

    def __init__(self, original_error: BaseException, step_id: Optional[str] = None):
        super().__init__(
            f"Internal error: {type(original_error).__name__}: {original_error}", step_id
        )
        self.original_error = original_error

