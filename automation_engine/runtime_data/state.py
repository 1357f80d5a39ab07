"""
Run State

Step and run statuses, the run report, and the per-run execution context.
"""

import asyncio
import inspect
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..cancellation import CancellationToken
from ..config import EngineConfig
from ..errors import AutomationError, EffectAdapterError, RunCancelled
from .variables import VariableStore

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    """Status of a step in the run report."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Overall status of a finished run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunState(str, Enum):
    """Lifecycle of an execution controller."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StepOutcome:
    """Value returned by a step handler."""

    output: Any = None
    message: Optional[str] = None


@dataclass
class StepRecord:
    """One entry of the run report."""

    step_id: str
    step_type: str
    path: str
    status: StepStatus = StepStatus.RUNNING
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    output: Any = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the run report record shape."""
        result = {
            "stepId": self.step_id,
            "stepType": self.step_type,
            "path": self.path,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }
        if self.error is not None:
            result["error"] = self.error
            result["errorType"] = self.error_type
        if self.output is not None:
            result["output"] = self.output
        return result


class RunReport:
    """
    Ordered record of what executed during one run.

    Records are appended as steps are dispatched; once ``finalize`` has been
    called the report is read-only.
    """

    def __init__(
        self,
        automation_id: str,
        run_id: Optional[str] = None,
        trigger: Optional[Dict[str, Any]] = None,
    ):
        self.automation_id = automation_id
        self.run_id = run_id or str(uuid.uuid4())
        self.trigger = trigger or {}
        self.status: Optional[RunStatus] = None
        self.error: Optional[str] = None
        self.error_type: Optional[str] = None
        self.started_at = datetime.utcnow()
        self.finished_at: Optional[datetime] = None
        self._steps: List[StepRecord] = []

    @property
    def steps(self) -> Tuple[StepRecord, ...]:
        return tuple(self._steps)

    @property
    def is_final(self) -> bool:
        return self.status is not None

    def append(self, record: StepRecord) -> StepRecord:
        """
        Append a step record.

        Raises:
            RuntimeError: If the report has been finalized
        """
        if self.is_final:
            raise RuntimeError(f"Run report {self.run_id} is finalized")
        self._steps.append(record)
        return record

    def finalize(
        self,
        status: RunStatus,
        error: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> "RunReport":
        """Set the terminal status. Subsequent appends fail."""
        if self.is_final:
            raise RuntimeError(f"Run report {self.run_id} is already finalized")
        self.status = status
        self.error = error
        self.error_type = error_type
        self.finished_at = datetime.utcnow()
        return self

    def records_for(self, step_id: str) -> List[StepRecord]:
        """All records of a step (loop bodies produce one per iteration)."""
        return [r for r in self._steps if r.step_id == step_id]

    def step_ids(self) -> List[str]:
        return [r.step_id for r in self._steps]

    def count(self, status: StepStatus) -> int:
        return sum(1 for r in self._steps if r.status == status)

    @property
    def failed_step(self) -> Optional[StepRecord]:
        """The last failed record, i.e. the step that stopped a failed run."""
        for record in reversed(self._steps):
            if record.status == StepStatus.FAILED:
                return record
        return None

    @property
    def elapsed_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def summary(self) -> Dict[str, Any]:
        """Counts per status plus the overall outcome."""
        return {
            "automationId": self.automation_id,
            "runId": self.run_id,
            "status": self.status.value if self.status else None,
            "total": len(self._steps),
            "succeeded": self.count(StepStatus.SUCCEEDED),
            "failed": self.count(StepStatus.FAILED),
            "skipped": self.count(StepStatus.SKIPPED),
            "cancelled": self.count(StepStatus.CANCELLED),
            "elapsedSeconds": self.elapsed_seconds,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the run report shape exposed to callers."""
        return {
            "automationId": self.automation_id,
            "runId": self.run_id,
            "status": self.status.value if self.status else None,
            "trigger": self.trigger,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "errorType": self.error_type,
            "steps": [r.to_dict() for r in self._steps],
        }

    def __repr__(self) -> str:
        """String representation."""
        status = self.status.value if self.status else "running"
        return (
            f"RunReport(automation_id={self.automation_id}, "
            f"status={status}, steps={len(self._steps)})"
        )


class ExecutionContext:
    """
    Per-run execution context.

    Holds the variable store, cancellation token, run report and the injected
    effect adapter. One context is created per run and never shared.
    """

    def __init__(
        self,
        automation_id: str,
        variables: VariableStore,
        token: CancellationToken,
        report: RunReport,
        effects: Any = None,
        config: Optional[EngineConfig] = None,
        rng: Optional[random.Random] = None,
        on_step: Optional[Callable[[StepRecord], Any]] = None,
    ):
        self.automation_id = automation_id
        self.variables = variables
        self.token = token
        self.report = report
        self.effects = effects
        self.config = config or EngineConfig()
        self.rng = rng or random.Random()
        self.on_step = on_step
        self.metadata: Dict[str, Any] = {}

        # Report path of the step being dispatched, e.g. "2.then.0"
        self.path = ""
        # Set by the engine: async (steps, context, prefix) -> None
        self.runner: Optional[Callable[..., Awaitable[None]]] = None

    @property
    def is_cancelled(self) -> bool:
        return self.token.is_cancelled

    async def run_children(self, steps: List[Any], prefix: str) -> None:
        """
        Run a nested step list through the engine's dispatch loop.

        Raises:
            ChildStepFailed: If a child failed fatally
            RunCancelled: If the run was cancelled
        """
        if self.runner is None:
            raise RuntimeError("Execution context is not attached to an engine")
        await self.runner(steps, self, prefix)

    async def call_effect(
        self,
        capability: str,
        method: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Invoke an effect adapter method under the run's timeout and cancellation rules.

        The token is passed through (``token=``) and raced against the call only
        when the adapter declares ``supports_cancellation``; otherwise a dispatched
        call runs to completion or timeout.

        Args:
            capability: Capability name used in error messages
            method: Bound adapter coroutine function
            timeout: Timeout in seconds (``None`` disables it)

        Returns:
            Result of the adapter call

        Raises:
            EffectAdapterError: On adapter failure or timeout
            RunCancelled: If a cancellation-aware call was cancelled
        """
        adapter = getattr(method, "__self__", self.effects)
        supports_cancellation = bool(getattr(adapter, "supports_cancellation", False))

        if supports_cancellation:
            kwargs["token"] = self.token

        try:
            result = method(*args, **kwargs)
            if inspect.isawaitable(result):
                if supports_cancellation:
                    result = await self.token.wait_for(result, timeout=timeout)
                elif timeout:
                    result = await asyncio.wait_for(result, timeout=timeout)
                else:
                    result = await result
            return result
        except (RunCancelled, EffectAdapterError):
            raise
        except asyncio.TimeoutError as e:
            raise EffectAdapterError(
                f"{capability} timed out after {timeout}s",
                capability=capability,
                original_error=e,
            )
        except AutomationError:
            raise
        except Exception as e:
            raise EffectAdapterError(
                f"{capability} failed: {e}", capability=capability, original_error=e
            )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ExecutionContext(automation_id={self.automation_id}, "
            f"variables={len(self.variables)}, cancelled={self.is_cancelled})"
        )
