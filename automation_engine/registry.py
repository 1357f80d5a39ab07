"""Step registry mapping step types to handlers."""

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from .definition import Step
from .errors import UnknownStepType
from .runtime_data import ExecutionContext, StepOutcome
from .steps import (
    FunctionStepHandler,
    StepConfig,
    StepHandler,
    builtin_handlers,
    effect_handlers,
)

logger = logging.getLogger(__name__)


class StepRegistry:
    """
    Registry of step handlers.

    Device and network specific logic stays out of the engine core: hosts
    register (or replace) handlers for the step types they support.
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._handlers: Dict[str, StepHandler] = {}

    def register(
        self,
        step_type: str,
        handler: Union[StepHandler, Callable[..., Any]],
        fatal_by_default: bool = True,
    ) -> StepHandler:
        """
        Register or replace the handler for a step type.

        Args:
            step_type: Step type tag
            handler: StepHandler instance, or an ``async (config, context)`` function
            fatal_by_default: Failure policy for function handlers

        Returns:
            The registered StepHandler

        Raises:
            TypeError: If the handler is neither a StepHandler nor a coroutine function
        """
        if not step_type:
            raise ValueError("Step type must be a non-empty string")

        if isinstance(handler, StepHandler):
            registered = handler
        elif inspect.iscoroutinefunction(handler):
            registered = FunctionStepHandler(step_type, handler, fatal_by_default)
        else:
            raise TypeError(
                f"Handler for '{step_type}' must be a StepHandler or an async function"
            )

        if step_type in self._handlers:
            logger.debug(f"Replacing handler for step type '{step_type}'")
        self._handlers[step_type] = registered
        return registered

    def unregister(self, step_type: str) -> bool:
        """Remove a handler. Returns True if one was registered."""
        return self._handlers.pop(step_type, None) is not None

    def get(self, step_type: str) -> Optional[StepHandler]:
        """
        Get handler by step type.

        Returns:
            StepHandler or None if not found
        """
        return self._handlers.get(step_type)

    def require(self, step_type: str, step_id: Optional[str] = None) -> StepHandler:
        """
        Get handler by step type.

        Raises:
            UnknownStepType: If no handler is registered
        """
        handler = self._handlers.get(step_type)
        if handler is None:
            raise UnknownStepType(step_type, step_id)
        return handler

    def has(self, step_type: str) -> bool:
        return step_type in self._handlers

    def list_types(self) -> List[str]:
        """
        List all registered step types.

        Returns:
            List of step type tags
        """
        return list(self._handlers.keys())

    def validate(self, step_type: str, config: Dict[str, Any], step_id: Optional[str] = None) -> StepConfig:
        """
        Validate a config for a step type.

        Raises:
            UnknownStepType: If no handler is registered
            StepValidationError: If the config has the wrong shape
        """
        return self.require(step_type, step_id).validate(config, step_id)

    async def dispatch(
        self,
        step: Step,
        config: Dict[str, Any],
        context: ExecutionContext,
    ) -> StepOutcome:
        """
        Validate a resolved config, run the step's handler and store its
        output under the step's ``outputVariable``, when one is set.

        Raises:
            UnknownStepType: If no handler is registered
            StepValidationError: If the config has the wrong shape
            AutomationError: Whatever the handler raises
        """
        handler = self.require(step.type, step.id)
        parsed = handler.validate(config, step.id)
        outcome = await handler.execute(parsed, context, step)
        if parsed.output_variable:
            context.variables.set(parsed.output_variable, outcome.output)
        return outcome

    def copy(self) -> "StepRegistry":
        """Shallow copy sharing handler instances."""
        clone = StepRegistry()
        clone._handlers = dict(self._handlers)
        return clone

    def __contains__(self, step_type: str) -> bool:
        return self.has(step_type)

    def __len__(self) -> int:
        return len(self._handlers)


def create_default_registry() -> StepRegistry:
    """
    Create a registry with every built-in and effect step handler.

    Control-flow types (condition, loop, group, random) are handled by the
    engine's ControlFlowEvaluator and are not registered here.
    """
    registry = StepRegistry()
    for handler in builtin_handlers() + effect_handlers():
        registry.register(handler.step_type, handler)
    return registry
