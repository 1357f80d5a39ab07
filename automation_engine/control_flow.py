"""
Control-Flow Evaluator

Interprets condition, loop, group and random steps. Each handler decides
which child list runs and hands it back to the engine's dispatch loop through
``ExecutionContext.run_children``, so nested failures and cancellation behave
exactly like top-level ones.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator, model_validator

from .definition import Step
from .errors import LoopBoundExceeded, StepValidationError, TypeMismatch, UnknownStepType
from .expressions import STRUCTURED_OPERATORS, ConditionExpression, evaluate_structured
from .runtime_data import ExecutionContext, StepOutcome, coerce
from .steps.base import StepConfig, StepHandler

logger = logging.getLogger(__name__)

LOOP_TYPES = ("count", "while", "foreach")

CONDITION_NAMES = tuple(STRUCTURED_OPERATORS) + ("contains", "exists")


def _strip_braces(name: str) -> str:
    name = name.strip()
    if name.startswith("{{") and name.endswith("}}"):
        name = name[2:-2].strip()
    return name


class ConditionConfig(StepConfig):
    """Config of a condition step: an expression or the structured form."""

    expression: Optional[str] = Field(None, description="Boolean expression")
    variable: Optional[str] = Field(None, description="Variable to test (structured form)")
    condition: Optional[str] = Field(None, description="Comparison name (structured form)")
    value: Any = Field(None, description="Value to compare against (structured form)")

    @field_validator("condition")
    @classmethod
    def validate_condition(cls, v):
        """Validate the comparison name."""
        if v is not None and v not in CONDITION_NAMES:
            raise ValueError(f"Condition must be one of: {', '.join(CONDITION_NAMES)}")
        return v

    @model_validator(mode="after")
    def require_test(self):
        if self.expression is None and not (self.variable and self.condition):
            raise ValueError("Either 'expression' or 'variable' with 'condition' is required")
        return self


class ConditionHandler(StepHandler):
    """Run ``then`` when the condition holds, ``else`` otherwise."""

    step_type = "condition"
    config_model = ConditionConfig
    raw_fields = ("expression", "variable")

    async def execute(
        self, config: ConditionConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        path = context.path

        if config.expression is not None:
            result = ConditionExpression(config.expression).evaluate(context.variables)
        else:
            result = evaluate_structured(
                _strip_braces(config.variable),
                config.condition,
                config.value,
                context.variables,
            )

        branch = "then" if result else "else"
        children = step.then_steps if result else step.else_steps
        logger.debug(f"Condition '{step.id}' is {result}, running {len(children)} {branch} step(s)")

        if config.output_variable:
            context.variables.set(config.output_variable, result)
        if children:
            await context.run_children(children, f"{path}.{branch}")
        return StepOutcome(output={"result": result, "branch": branch})


class LoopConfig(StepConfig):
    """Config of a loop step."""

    type: str = Field("count", description="count, while or foreach")
    count: Optional[int] = Field(None, ge=0, description="Iterations for count loops")
    expression: Optional[str] = Field(None, description="Condition for while loops")
    items: Any = Field(None, description="List (or list reference) for foreach loops")
    item_variable: str = Field("item", alias="itemVariable", min_length=1)
    index_variable: str = Field("loopIndex", alias="indexVariable", min_length=1)
    max_iterations: Optional[int] = Field(
        None, alias="maxIterations", gt=0, description="Lower per-loop ceiling"
    )

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        """Validate the loop type."""
        loop_type = str(v).strip().lower()
        if loop_type not in LOOP_TYPES:
            raise ValueError(f"Loop type must be one of: {', '.join(LOOP_TYPES)}")
        return loop_type

    @model_validator(mode="after")
    def require_bound(self):
        if self.type == "count" and self.count is None:
            raise ValueError("Count loops require 'count'")
        if self.type == "while" and not self.expression:
            raise ValueError("While loops require 'expression'")
        if self.type == "foreach":
            if self.items is None:
                raise ValueError("Foreach loops require 'items'")
            if isinstance(self.items, str):
                try:
                    self.items = coerce(self.items, "list")
                except TypeMismatch:
                    raise ValueError("Foreach 'items' must be a list")
            if not isinstance(self.items, list):
                raise ValueError("Foreach 'items' must be a list")
        return self


class LoopHandler(StepHandler):
    """
    Repeat the body child list.

    Every loop is bounded by ``max_loop_iterations`` (lowered per step by
    ``maxIterations``). Count and foreach loops that would exceed it fail
    before the first iteration; while loops fail when the condition still holds
    at the ceiling.
    """

    step_type = "loop"
    config_model = LoopConfig
    raw_fields = ("expression",)

    async def execute(
        self, config: LoopConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        path = context.path
        ceiling = context.config.max_loop_iterations
        if config.max_iterations is not None:
            ceiling = min(ceiling, config.max_iterations)

        async def iterate(index: int, item: Any = None, has_item: bool = False) -> None:
            context.token.raise_if_cancelled(step.id)
            logger.debug(f"Loop '{step.id}' iteration {index}")
            context.variables.set(config.index_variable, index)
            if has_item:
                context.variables.set(config.item_variable, item)
            if step.body_steps:
                await context.run_children(step.body_steps, f"{path}.body[{index}]")

        iterations = 0
        if config.type == "count":
            if config.count > ceiling:
                raise LoopBoundExceeded(ceiling, step.id)
            for index in range(config.count):
                await iterate(index)
                iterations += 1

        elif config.type == "foreach":
            if len(config.items) > ceiling:
                raise LoopBoundExceeded(ceiling, step.id)
            for index, item in enumerate(config.items):
                await iterate(index, item, has_item=True)
                iterations += 1

        else:
            condition = ConditionExpression(config.expression)
            while condition.evaluate(context.variables):
                if iterations >= ceiling:
                    raise LoopBoundExceeded(ceiling, step.id)
                await iterate(iterations)
                iterations += 1

        if config.output_variable:
            context.variables.set(config.output_variable, iterations)
        return StepOutcome(output={"iterations": iterations})


class GroupHandler(StepHandler):
    """Run the child list as a plain sub-sequence."""

    step_type = "group"

    async def execute(
        self, config: StepConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        if step.body_steps:
            await context.run_children(step.body_steps, f"{context.path}.body")
        return StepOutcome(output={"steps": len(step.body_steps)})


class RandomHandler(StepHandler):
    """
    Run exactly one weighted branch.

    Selection uses the run's ``random.Random`` so seeded engines replay the
    same choices. The chosen index is recorded as the step output.
    """

    step_type = "random"

    async def execute(
        self, config: StepConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        path = context.path
        branches = step.branches
        if not branches:
            return StepOutcome(output=None)

        weights = [branch.weight for branch in branches]
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise StepValidationError(
                f"Random step '{step.id}' needs non-negative weights with a positive sum",
                step_id=step.id,
                errors=[{"field": "branches", "message": "invalid weights", "value": weights}],
            )

        index = context.rng.choices(range(len(branches)), weights=weights, k=1)[0]
        logger.debug(f"Random '{step.id}' selected branch {index} of {len(branches)}")

        if config.output_variable:
            context.variables.set(config.output_variable, index)
        if branches[index].steps:
            await context.run_children(branches[index].steps, f"{path}.branches[{index}]")
        return StepOutcome(output={"branch": index, "weight": branches[index].weight})


class ControlFlowEvaluator:
    """Holds the handlers for the step types that own child lists."""

    def __init__(self, handlers: Optional[List[StepHandler]] = None):
        """
        Initialize the evaluator.

        Args:
            handlers: Replacement handlers (defaults to condition, loop, group, random)
        """
        if handlers is None:
            handlers = [ConditionHandler(), LoopHandler(), GroupHandler(), RandomHandler()]
        self._handlers: Dict[str, StepHandler] = {h.step_type: h for h in handlers}

    def handles(self, step_type: str) -> bool:
        return step_type in self._handlers

    def list_types(self) -> List[str]:
        return list(self._handlers.keys())

    def require(self, step_type: str, step_id: Optional[str] = None) -> StepHandler:
        """
        Get the handler for a control-flow type.

        Raises:
            UnknownStepType: If the type is not a control-flow type
        """
        handler = self._handlers.get(step_type)
        if handler is None:
            raise UnknownStepType(step_type, step_id)
        return handler

    async def evaluate(
        self, step: Step, config: Dict[str, Any], context: ExecutionContext
    ) -> StepOutcome:
        """
        Validate a config and run a control-flow step.

        Raises:
            UnknownStepType: If the type is not a control-flow type
            StepValidationError: If the config has the wrong shape
            AutomationError: Whatever the handler or its children raise
        """
        handler = self.require(step.type, step.id)
        parsed = handler.validate(config, step.id)
        return await handler.execute(parsed, context, step)
