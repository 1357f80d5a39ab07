"""
Cancellation Token

Cooperative, idempotent cancellation signal shared by one run.
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional

from .errors import RunCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cancellation signal for a single automation run.

    The engine checks the token between steps. Handlers that can abort in the
    middle of their work (delays, cancellation-aware effect adapters) wait on it
    through ``sleep`` and ``wait_for``.
    """

    def __init__(self, name: Optional[str] = None):
        """
        Initialize the token.

        Args:
            name: Optional label used in log messages
        """
        self.name = name or "run"
        self.reason: Optional[str] = None
        self._cancel_event = asyncio.Event()

    def cancel(self, reason: Optional[str] = None) -> None:
        """
        Signal cancellation.

        Calling this more than once is a no-op; the first reason is kept.

        Args:
            reason: Optional human-readable reason
        """
        if self._cancel_event.is_set():
            return
        self.reason = reason
        logger.info(f"Cancelling {self.name}" + (f": {reason}" if reason else ""))
        self._cancel_event.set()

    @property
    def is_cancelled(self) -> bool:
        """Check if cancellation has been requested."""
        return self._cancel_event.is_set()

    def raise_if_cancelled(self, step_id: Optional[str] = None) -> None:
        """
        Raise if the token has been signalled.

        Raises:
            RunCancelled: If cancellation has been requested
        """
        if self.is_cancelled:
            raise RunCancelled(self.reason or "Run was cancelled", step_id)

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._cancel_event.wait()

    async def sleep(self, seconds: float) -> None:
        """
        Sleep for ``seconds`` unless cancelled first.

        Raises:
            RunCancelled: If the token is signalled before the delay elapses
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise RunCancelled(self.reason or "Run was cancelled during delay")

    async def wait_for(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """
        Await a coroutine while watching for cancellation.

        Args:
            coro: Coroutine to wait for
            timeout: Optional timeout in seconds

        Returns:
            Result of the coroutine

        Raises:
            RunCancelled: If the token is signalled first
            asyncio.TimeoutError: If the timeout elapses first
        """
        cancel_task = asyncio.ensure_future(self._cancel_event.wait())
        main_task = asyncio.ensure_future(coro)

        try:
            done, pending = await asyncio.wait(
                [main_task, cancel_task],
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if not done:
                main_task.cancel()
                raise asyncio.TimeoutError(f"Timed out after {timeout}s")

            if main_task in done:
                return main_task.result()

            main_task.cancel()
            raise RunCancelled(self.reason or "Run was cancelled")

        finally:
            for task in (main_task, cancel_task):
                if not task.done():
                    task.cancel()

    def __repr__(self) -> str:
        """String representation."""
        return f"CancellationToken(name={self.name!r}, cancelled={self.is_cancelled})"
