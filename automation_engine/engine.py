"""
Automation Engine

Drive one run of an automation from start to a terminal state: walk the step
tree depth-first in document order, resolve templated configs, dispatch to the
step registry or the control-flow evaluator, apply each step type's failure
policy, and honor cancellation between steps.
"""

import asyncio
import inspect
import logging
import random
from copy import deepcopy
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .cancellation import CancellationToken
from .config import EngineConfig
from .control_flow import ControlFlowEvaluator
from .definition import Automation, Step, Trigger, TriggerSource
from .effects import EffectAdapter, NullEffectAdapter
from .errors import (
    AutomationError,
    ChildStepFailed,
    EngineBusy,
    InternalError,
    InvalidAutomation,
    RunCancelled,
    StepValidationError,
    UnknownStepType,
)
from .registry import StepRegistry, create_default_registry
from .runtime_data import (
    ExecutionContext,
    RunReport,
    RunState,
    RunStatus,
    StepRecord,
    StepStatus,
    VariableStore,
)
from .steps.base import StepHandler

# Failures that stop the run regardless of continueOnError
ALWAYS_FATAL = (UnknownStepType, StepValidationError)


def _root_cause(error: AutomationError) -> AutomationError:
    while isinstance(error, ChildStepFailed):
        error = error.cause
    return error


class AutomationEngine:
    """
    Execution controller for automations.

    One engine drives one run at a time (``Idle -> Running -> Completed |
    Failed | Cancelled``); starting it again while running raises EngineBusy.
    Concurrent runs use separate engines. Each run gets its own
    ExecutionContext and nothing is shared between runs.
    """

    def __init__(
        self,
        registry: Optional[StepRegistry] = None,
        effects: Optional[EffectAdapter] = None,
        config: Optional[EngineConfig] = None,
        rng: Optional[random.Random] = None,
        control_flow: Optional[ControlFlowEvaluator] = None,
    ):
        """
        Initialize the engine.

        Args:
            registry: Step registry (defaults to every built-in and effect handler)
            effects: Effect adapter handed to effect steps
            config: Engine settings
            rng: Random source for random steps (seed it for reproducible runs)
            control_flow: Control-flow evaluator
        """
        self.logger = logging.getLogger(__name__)
        self.registry = registry if registry is not None else create_default_registry()
        self.control_flow = control_flow or ControlFlowEvaluator()
        self.effects = effects or NullEffectAdapter()
        self.config = config or EngineConfig()
        self.rng = rng
        self.state = RunState.IDLE
        self.last_report: Optional[RunReport] = None
        self._token: Optional[CancellationToken] = None

    def register(
        self,
        step_type: str,
        handler: Union[StepHandler, Callable[..., Any]],
        fatal_by_default: bool = True,
    ) -> StepHandler:
        """
        Register or replace a leaf step handler.

        Raises:
            ValueError: If ``step_type`` is a control-flow type
        """
        if self.control_flow.handles(step_type):
            raise ValueError(f"'{step_type}' is a control-flow step type")
        return self.registry.register(step_type, handler, fatal_by_default)

    @property
    def is_running(self) -> bool:
        return self.state == RunState.RUNNING

    def cancel(self, reason: Optional[str] = None) -> bool:
        """
        Cancel the current run, if any.

        Returns:
            True if a run was signalled
        """
        if self._token is None:
            return False
        self._token.cancel(reason)
        return True

    async def start(
        self,
        automation: Automation,
        initial_variables: Optional[Dict[str, Any]] = None,
        token: Optional[CancellationToken] = None,
        trigger: Optional[Union[Trigger, Dict[str, Any]]] = None,
        on_step: Optional[Callable[[StepRecord], Any]] = None,
    ) -> RunReport:
        """
        Run an automation to a terminal state.

        Args:
            automation: Automation to run (a snapshot is taken; later edits apply to the next run)
            initial_variables: Seed variables
            token: Cancellation token (one per run)
            trigger: Trigger (or trigger record) that launched the run
            on_step: Callback (sync or async) invoked with each finished step record

        Returns:
            Finalized RunReport; failures and cancellation are reported, not raised

        Raises:
            EngineBusy: If this engine is already running
        """
        if self.is_running:
            raise EngineBusy(f"Engine is already running automation '{automation.id}'")

        self.state = RunState.RUNNING
        token = token or CancellationToken(name=f"run of '{automation.id}'")
        self._token = token
        report = RunReport(automation_id=automation.id)

        try:
            await self._run(automation, initial_variables, token, trigger, report, on_step)
        except asyncio.CancelledError:
            token.cancel("Run task was cancelled")
            if not report.is_final:
                report.finalize(RunStatus.CANCELLED, "Run task was cancelled", RunCancelled.code)
            self.state = RunState.CANCELLED
            raise
        finally:
            self._token = None
            self.last_report = report

        self.state = {
            RunStatus.SUCCEEDED: RunState.COMPLETED,
            RunStatus.FAILED: RunState.FAILED,
            RunStatus.CANCELLED: RunState.CANCELLED,
        }[report.status]

        self.logger.info(
            f"Automation '{automation.id}' finished: {report.status.value} "
            f"({len(report.steps)} step record(s), {report.elapsed_seconds:.3f}s)"
        )
        return report

    async def _run(
        self,
        automation: Automation,
        initial_variables: Optional[Dict[str, Any]],
        token: CancellationToken,
        trigger: Optional[Union[Trigger, Dict[str, Any]]],
        report: RunReport,
        on_step: Optional[Callable[[StepRecord], Any]],
    ) -> None:
        try:
            if trigger is None:
                trigger = Trigger()
            elif isinstance(trigger, dict):
                trigger = Trigger.from_dict(trigger)
            report.trigger = trigger.to_dict()

            snapshot = deepcopy(automation)
            self._check_runnable(snapshot, trigger)

            variables = VariableStore(initial_variables, strict=self.config.strict_templates)
            for name, value in trigger.variables.items():
                variables.set(name, value)
            variables.set("triggerSource", trigger.source.value)
            variables.set("triggerTime", trigger.timestamp.isoformat())

            context = ExecutionContext(
                automation_id=snapshot.id,
                variables=variables,
                token=token,
                report=report,
                effects=self.effects,
                config=self.config,
                rng=self.rng,
                on_step=on_step,
            )
            context.runner = self._run_steps

            token.raise_if_cancelled()
            self.logger.info(
                f"Starting automation '{snapshot.id}' ({len(snapshot.steps)} step(s), "
                f"trigger: {trigger.source.value})"
            )
            await self._run_steps(snapshot.steps, context, "")
            report.finalize(RunStatus.SUCCEEDED)

        except RunCancelled as e:
            self.logger.warning(f"Automation '{automation.id}' cancelled: {e.message}")
            report.finalize(RunStatus.CANCELLED, e.message, e.code)

        except ChildStepFailed as e:
            cause = _root_cause(e)
            report.finalize(
                RunStatus.FAILED,
                f"Step '{cause.step_id or e.child_id}' failed: {cause.message}",
                cause.code,
            )

        except AutomationError as e:
            self.logger.warning(f"Automation '{automation.id}' not run: {e.message}")
            report.finalize(RunStatus.FAILED, e.message, e.code)

        except Exception as e:
            self.logger.error(f"Automation '{automation.id}' crashed: {e}", exc_info=True)
            report.finalize(RunStatus.FAILED, f"Internal error: {e}", InternalError.code)

    def _check_runnable(self, automation: Automation, trigger: Trigger) -> None:
        """
        Structural and trigger checks done before any step runs.

        Raises:
            InvalidAutomation: On malformed structure or a trigger mismatch
            StepValidationError: If nesting exceeds max_nesting_depth
        """
        errors = automation.validate()
        if errors:
            raise InvalidAutomation(f"Invalid automation: {'; '.join(errors)}")

        limit = self.config.max_nesting_depth
        for step in automation.steps:
            if step.depth() > limit:
                raise StepValidationError(
                    f"Step '{step.id}' nests deeper than the limit of {limit}",
                    step_id=step.id,
                    errors=[{"field": "children", "message": "too deeply nested", "value": step.depth()}],
                )

        if trigger.automation_id is not None and trigger.automation_id != automation.id:
            raise InvalidAutomation(
                f"Trigger targets automation '{trigger.automation_id}', not '{automation.id}'"
            )
        if not automation.is_active and trigger.source != TriggerSource.MANUAL:
            raise InvalidAutomation(
                f"Automation '{automation.id}' is inactive and can only be run manually"
            )

    async def _run_steps(
        self, steps: List[Step], context: ExecutionContext, prefix: str
    ) -> None:
        """
        Dispatch a step list in order.

        Control-flow handlers call back into this through
        ``ExecutionContext.run_children``.

        Raises:
            RunCancelled: If the token is signalled
            ChildStepFailed: If a step failed fatally
        """
        for index, step in enumerate(steps):
            path = f"{prefix}.{index}" if prefix else str(index)
            context.token.raise_if_cancelled(step.id)

            if not step.enabled:
                now = datetime.utcnow()
                record = context.report.append(
                    StepRecord(
                        step_id=step.id,
                        step_type=step.type,
                        path=path,
                        status=StepStatus.SKIPPED,
                        started_at=now,
                        finished_at=now,
                    )
                )
                self.logger.debug(f"Skipping disabled step '{step.id}'")
                await self._notify(context, record)
                continue

            await self._execute_step(step, context, path)

    def _handler_for(self, step: Step) -> StepHandler:
        if step.is_control_flow:
            return self.control_flow.require(step.type, step.id)
        return self.registry.require(step.type, step.id)

    def _resolve_config(
        self, handler: StepHandler, step: Step, context: ExecutionContext
    ) -> Dict[str, Any]:
        raw = {k: v for k, v in step.config.items() if k in handler.raw_fields}
        resolved = context.variables.resolve_config(
            {k: v for k, v in step.config.items() if k not in handler.raw_fields}
        )
        resolved.update(raw)
        return resolved

    async def _execute_step(self, step: Step, context: ExecutionContext, path: str) -> None:
        record = context.report.append(
            StepRecord(
                step_id=step.id,
                step_type=step.type,
                path=path,
                started_at=datetime.utcnow(),
            )
        )
        context.path = path
        fatal = True
        failure: Optional[AutomationError] = None

        self.logger.info(f"Executing step '{step.id}' ({step.type})")
        try:
            handler = self._handler_for(step)
            fatal = handler.is_fatal(step.config)
            config = self._resolve_config(handler, step, context)
            if step.is_control_flow:
                outcome = await self.control_flow.evaluate(step, config, context)
            else:
                outcome = await self.registry.dispatch(step, config, context)

            record.status = StepStatus.SUCCEEDED
            if self.config.record_outputs:
                record.output = outcome.output

        except RunCancelled as e:
            record.status = StepStatus.CANCELLED
            record.error = e.message
            record.error_type = e.code
            raise

        except asyncio.CancelledError:
            record.status = StepStatus.CANCELLED
            record.error = "Run task was cancelled"
            record.error_type = RunCancelled.code
            raise

        except AutomationError as e:
            failure = e
            if e.step_id is None:
                e.step_id = step.id
            if isinstance(_root_cause(e), ALWAYS_FATAL):
                fatal = True

        except Exception as e:
            self.logger.error(f"Step '{step.id}' raised an unexpected error: {e}", exc_info=True)
            failure = InternalError(e, step.id)
            fatal = True

        finally:
            if failure is not None:
                record.status = StepStatus.FAILED
                record.error = failure.message
                record.error_type = failure.code
            record.finished_at = datetime.utcnow()
            await self._notify(context, record)

        if failure is None:
            return
        if fatal:
            raise ChildStepFailed(step.id, failure)
        self.logger.warning(
            f"Step '{step.id}' failed ({failure.code}), continuing: {failure.message}"
        )

    async def _notify(self, context: ExecutionContext, record: StepRecord) -> None:
        if context.on_step is None:
            return
        try:
            result = context.on_step(record)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.warning(f"on_step callback failed for step '{record.step_id}': {e}")


async def run_automation(
    automation: Automation,
    trigger: Optional[Union[Trigger, Dict[str, Any]]] = None,
    token: Optional[CancellationToken] = None,
    initial_variables: Optional[Dict[str, Any]] = None,
    on_step: Optional[Callable[[StepRecord], Any]] = None,
    **engine_kwargs: Any,
) -> RunReport:
    """
    Run an automation on a fresh engine.

    Args:
        automation: Automation to run
        trigger: Trigger (or trigger record) that launched the run
        token: Cancellation token
        initial_variables: Seed variables
        on_step: Per-step progress callback
        **engine_kwargs: Passed to AutomationEngine (registry, effects, config, rng)

    Returns:
        Finalized RunReport
    """
    engine = AutomationEngine(**engine_kwargs)
    return await engine.start(
        automation,
        initial_variables=initial_variables,
        token=token,
        trigger=trigger,
        on_step=on_step,
    )
