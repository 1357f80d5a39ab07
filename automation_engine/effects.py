"""Effect adapter interfaces.

Effect adapters are the capabilities step handlers use to touch the outside
world (notifications, messaging, HTTP, device state, app launching). The
engine only depends on these interfaces; concrete transports live in
``automation_engine.adapters`` or in the host application.

Every method reports failure by raising. Adapters that can abort an in-flight
call set ``supports_cancellation = True`` and accept a ``token`` keyword
argument.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .errors import EffectAdapterError


class MessageKind(str, Enum):
    """Messaging channels."""

    SMS = "sms"
    EMAIL = "email"


class DeviceActionKind(str, Enum):
    """Device state actions."""

    WIFI = "wifi"
    BLUETOOTH = "bluetooth"
    BRIGHTNESS = "brightness"
    VOLUME = "volume"


@dataclass
class WebhookResponse:
    """Response of a webhook call."""

    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"status": self.status, "body": self.body, "headers": dict(self.headers)}


class EffectAdapter(ABC):
    """Capability interface consumed by effect step handlers."""

    supports_cancellation = False

    @abstractmethod
    async def send_notification(self, message: str, title: Optional[str] = None, **kwargs) -> None:
        """Show a local notification."""
        pass

    @abstractmethod
    async def send_message(
        self,
        kind: MessageKind,
        target: str,
        body: str,
        subject: Optional[str] = None,
        **kwargs,
    ) -> None:
        """Send an SMS or email."""
        pass

    @abstractmethod
    async def call_webhook(
        self,
        url: str,
        method: str,
        headers: Dict[str, str],
        body: Any,
        timeout: Optional[float],
        **kwargs,
    ) -> WebhookResponse:
        """Perform an HTTP request."""
        pass

    @abstractmethod
    async def device_action(
        self, kind: DeviceActionKind, params: Dict[str, Any], **kwargs
    ) -> None:
        """Change device state (wifi, bluetooth, brightness, volume)."""
        pass

    @abstractmethod
    async def launch_app(self, app_id: str, **kwargs) -> None:
        """Open another application."""
        pass


class NullEffectAdapter(EffectAdapter):
    """Adapter used when none is injected: every capability is unavailable."""

    def _unavailable(self, capability: str) -> EffectAdapterError:
        return EffectAdapterError(
            f"No effect adapter available for {capability}", capability=capability
        )

    async def send_notification(self, message: str, title: Optional[str] = None, **kwargs) -> None:
        raise self._unavailable("send_notification")

    async def send_message(
        self,
        kind: MessageKind,
        target: str,
        body: str,
        subject: Optional[str] = None,
        **kwargs,
    ) -> None:
        raise self._unavailable("send_message")

    async def call_webhook(
        self,
        url: str,
        method: str,
        headers: Dict[str, str],
        body: Any,
        timeout: Optional[float],
        **kwargs,
    ) -> WebhookResponse:
        raise self._unavailable("call_webhook")

    async def device_action(
        self, kind: DeviceActionKind, params: Dict[str, Any], **kwargs
    ) -> None:
        raise self._unavailable("device_action")

    async def launch_app(self, app_id: str, **kwargs) -> None:
        raise self._unavailable("launch_app")
