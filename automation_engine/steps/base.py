"""
Base Step Handler

Abstract base class for step handlers and the shared config model.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..definition import Step
from ..errors import StepValidationError
from ..runtime_data import ExecutionContext, StepOutcome


class StepConfig(BaseModel):
    """Config fields every step type accepts."""

    model_config = ConfigDict(
        extra="allow",
        populate_by_name=True,
        coerce_numbers_to_str=True,
    )

    continue_on_error: Optional[bool] = Field(
        None,
        alias="continueOnError",
        description="Override the step type's failure policy",
    )
    output_variable: Optional[str] = Field(
        None,
        alias="outputVariable",
        description="Variable that receives the step output",
    )
    timeout: Optional[float] = Field(
        None, gt=0, description="Timeout in seconds for effect calls"
    )
    timeout_ms: Optional[float] = Field(
        None, alias="timeoutMs", gt=0, description="Timeout in milliseconds for effect calls"
    )

    def timeout_seconds(self, default: Optional[float]) -> Optional[float]:
        """Effective timeout: explicit seconds, then milliseconds, then ``default``."""
        if self.timeout is not None:
            return self.timeout
        if self.timeout_ms is not None:
            return self.timeout_ms / 1000.0
        return default


def _field_errors(error: PydanticValidationError, config: Dict[str, Any]) -> list:
    errors = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "config"
        errors.append(
            {
                "field": location,
                "message": item.get("msg", "invalid value"),
                "value": config.get(location, item.get("input")),
            }
        )
    return errors


class StepHandler(ABC):
    """
    Abstract base class for step handlers.

    Subclasses set ``step_type`` and ``config_model`` and implement ``execute``.
    ``raw_fields`` lists config keys that are handed to the handler without
    template resolution (expressions that are evaluated later, per iteration).
    """

    step_type: str = ""
    config_model: Type[StepConfig] = StepConfig
    fatal_by_default: bool = True
    raw_fields: Tuple[str, ...] = ()

    def validate(self, config: Dict[str, Any], step_id: Optional[str] = None) -> StepConfig:
        """
        Validate a resolved config against ``config_model``.

        Returns:
            Parsed config model

        Raises:
            StepValidationError: If the config has the wrong shape
        """
        try:
            return self.config_model.model_validate(config)
        except PydanticValidationError as e:
            errors = _field_errors(e, config)
            summary = "; ".join(f"{err['field']}: {err['message']}" for err in errors)
            raise StepValidationError(
                f"Invalid config for {self.step_type or 'step'} step: {summary}",
                step_id=step_id,
                errors=errors,
            )

    def is_fatal(self, config: Dict[str, Any]) -> bool:
        """
        Apply the per-step ``continueOnError`` override to the type default.

        Reads the raw stored config so the override also applies when template
        resolution or validation never produced a parsed model.
        """
        override = (config or {}).get("continueOnError")
        if isinstance(override, bool):
            return not override
        if isinstance(override, str) and override.strip().lower() in ("true", "false"):
            return override.strip().lower() != "true"
        return self.fatal_by_default

    @abstractmethod
    async def execute(
        self, config: StepConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        """
        Execute the step.

        Args:
            config: Validated, template-resolved config
            context: Run execution context
            step: Step definition (control-flow handlers read its children)

        Returns:
            StepOutcome with the step output

        Raises:
            AutomationError: If step execution fails
        """
        pass

    def __repr__(self) -> str:
        """String representation."""
        return f"{self.__class__.__name__}(type='{self.step_type}')"


HandlerFunction = Callable[[Dict[str, Any], ExecutionContext], Awaitable[Any]]


class FunctionStepHandler(StepHandler):
    """
    Adapts a plain ``async (config, context)`` function into a handler.

    The function receives the resolved config as a dict. A returned
    StepOutcome is used as-is; any other value becomes the step output.
    """

    def __init__(
        self,
        step_type: str,
        func: HandlerFunction,
        fatal_by_default: bool = True,
        config_model: Type[StepConfig] = StepConfig,
    ):
        self.step_type = step_type
        self.func = func
        self.fatal_by_default = fatal_by_default
        self.config_model = config_model

    async def execute(
        self, config: StepConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        result = await self.func(config.model_dump(by_alias=True), context)
        if isinstance(result, StepOutcome):
            return result
        return StepOutcome(output=result)
