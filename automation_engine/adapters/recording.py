"""In-memory effect adapter that records every call.

Used for dry runs and tests: nothing leaves the process. Failures, latency and
webhook responses can be scripted per capability.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..cancellation import CancellationToken
from ..effects import DeviceActionKind, EffectAdapter, MessageKind, WebhookResponse
from ..errors import EffectAdapterError

CAPABILITIES = ("send_notification", "send_message", "call_webhook", "device_action", "launch_app")


@dataclass
class EffectCall:
    """One recorded adapter call."""

    capability: str
    params: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "capability": self.capability,
            "params": self.params,
            "timestamp": self.timestamp.isoformat(),
        }


class RecordingEffectAdapter(EffectAdapter):
    """
    Effect adapter that records calls instead of performing them.

    Example:
        effects = RecordingEffectAdapter()
        effects.fail("call_webhook", EffectAdapterError("boom"))
        effects.set_latency("call_webhook", 5.0)
    """

    def __init__(
        self,
        supports_cancellation: bool = False,
        webhook_response: Optional[WebhookResponse] = None,
    ):
        """
        Initialize the adapter.

        Args:
            supports_cancellation: Accept the run token and abort latency waits on cancel
            webhook_response: Response returned by call_webhook (default 200, empty body)
        """
        self.supports_cancellation = supports_cancellation
        self.webhook_response = webhook_response or WebhookResponse(status=200)
        self.calls: List[EffectCall] = []
        self._failures: Dict[str, List[BaseException]] = {}
        self._latency: Dict[str, float] = {}

    def fail(
        self,
        capability: str,
        error: Optional[BaseException] = None,
        times: int = 1,
    ) -> None:
        """Make the next ``times`` calls of a capability raise ``error``."""
        if capability not in CAPABILITIES:
            raise ValueError(f"Unknown capability: {capability}")
        error = error or EffectAdapterError(f"{capability} failed", capability=capability)
        self._failures.setdefault(capability, []).extend([error] * times)

    def set_latency(self, capability: str, seconds: float) -> None:
        """Delay every call of a capability."""
        if capability not in CAPABILITIES:
            raise ValueError(f"Unknown capability: {capability}")
        self._latency[capability] = seconds

    def set_webhook_response(self, status: int, body: Any = None) -> None:
        self.webhook_response = WebhookResponse(status=status, body=body)

    def calls_for(self, capability: str) -> List[EffectCall]:
        return [c for c in self.calls if c.capability == capability]

    def reset(self) -> None:
        """Forget recorded calls and scripted behavior."""
        self.calls.clear()
        self._failures.clear()
        self._latency.clear()

    async def _record(
        self, capability: str, token: Optional[CancellationToken], **params: Any
    ) -> None:
        self.calls.append(EffectCall(capability=capability, params=params))

        latency = self._latency.get(capability, 0.0)
        if latency > 0:
            if token is not None:
                await token.sleep(latency)
            else:
                await asyncio.sleep(latency)

        failures = self._failures.get(capability)
        if failures:
            raise failures.pop(0)

    async def send_notification(self, message: str, title: Optional[str] = None, **kwargs) -> None:
        await self._record(
            "send_notification", kwargs.get("token"), message=message, title=title
        )

    async def send_message(
        self,
        kind: MessageKind,
        target: str,
        body: str,
        subject: Optional[str] = None,
        **kwargs,
    ) -> None:
        await self._record(
            "send_message",
            kwargs.get("token"),
            kind=MessageKind(kind).value,
            target=target,
            body=body,
            subject=subject,
        )

    async def call_webhook(
        self,
        url: str,
        method: str,
        headers: Dict[str, str],
        body: Any,
        timeout: Optional[float],
        **kwargs,
    ) -> WebhookResponse:
        await self._record(
            "call_webhook",
            kwargs.get("token"),
            url=url,
            method=method,
            headers=dict(headers or {}),
            body=body,
            timeout=timeout,
        )
        return self.webhook_response

    async def device_action(
        self, kind: Union[DeviceActionKind, str], params: Dict[str, Any], **kwargs
    ) -> None:
        await self._record(
            "device_action",
            kwargs.get("token"),
            kind=DeviceActionKind(kind).value,
            **params,
        )

    async def launch_app(self, app_id: str, **kwargs) -> None:
        await self._record("launch_app", kwargs.get("token"), app_id=app_id, url=kwargs.get("url"))
