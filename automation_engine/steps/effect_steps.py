"""
Effect Steps

Handlers that reach the outside world through the injected effect adapter.
The handlers validate config and translate it into adapter calls; they never
import transport code.
"""

import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import Field, field_validator, model_validator

from ..definition import Step
from ..effects import DeviceActionKind, MessageKind, WebhookResponse
from ..errors import EffectAdapterError, TypeMismatch
from ..runtime_data import ExecutionContext, StepOutcome, to_bool
from .base import StepConfig, StepHandler

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class NotificationConfig(StepConfig):
    """Config of a notification step."""

    message: str = Field(..., min_length=1, description="Notification text")
    title: Optional[str] = Field(None, description="Notification title")


class NotificationHandler(StepHandler):
    """Show a local notification."""

    step_type = "notification"
    config_model = NotificationConfig
    fatal_by_default = False

    async def execute(
        self, config: NotificationConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        effects = context.effects
        await context.call_effect(
            "send_notification",
            effects.send_notification,
            config.message,
            title=config.title,
            timeout=config.timeout_seconds(None),
        )
        return StepOutcome(output={"message": config.message}, message=config.message)


class SmsConfig(StepConfig):
    """Config of an sms step."""

    phone_number: str = Field(..., alias="phoneNumber", min_length=1, description="Recipient")
    message: str = Field(..., min_length=1, description="Message body")


class EmailConfig(StepConfig):
    """Config of an email step."""

    email: str = Field(..., description="Recipient address")
    subject: str = Field(..., min_length=1, description="Subject line")
    message: str = Field(..., min_length=1, description="Message body")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        """Validate the recipient address format."""
        if not _EMAIL_PATTERN.match(v.strip()):
            raise ValueError("Email must be a valid email address")
        return v.strip()


class SmsHandler(StepHandler):
    """Send a text message."""

    step_type = "sms"
    config_model = SmsConfig

    async def execute(
        self, config: SmsConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        effects = context.effects
        timeout = config.timeout_seconds(context.config.effect_timeout_seconds)
        await context.call_effect(
            "send_message",
            effects.send_message,
            MessageKind.SMS,
            config.phone_number,
            config.message,
            timeout=timeout,
        )
        return StepOutcome(output={"to": config.phone_number})


class EmailHandler(StepHandler):
    """Send an email."""

    step_type = "email"
    config_model = EmailConfig

    async def execute(
        self, config: EmailConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        effects = context.effects
        timeout = config.timeout_seconds(context.config.effect_timeout_seconds)
        await context.call_effect(
            "send_message",
            effects.send_message,
            MessageKind.EMAIL,
            config.email,
            config.message,
            subject=config.subject,
            timeout=timeout,
        )
        return StepOutcome(output={"to": config.email, "subject": config.subject})


class WebhookConfig(StepConfig):
    """Config of a webhook step."""

    url: str = Field(..., description="Target URL (http or https)")
    method: str = Field("POST", description="HTTP method")
    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers")
    body: Any = Field(None, description="Request body (templates resolved)")
    accept_status: List[int] = Field(
        default_factory=list,
        alias="acceptStatus",
        description="Error statuses treated as success",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        """Validate the URL is absolute http(s)."""
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("URL must be a valid http or https URL")
        return v.strip()

    @field_validator("method")
    @classmethod
    def validate_method(cls, v):
        """Validate the HTTP method."""
        method = v.strip().upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Method must be one of: {', '.join(HTTP_METHODS)}")
        return method


class HttpRequestConfig(WebhookConfig):
    """Config of an http_request step. Same shape as webhook, GET by default."""

    method: str = Field("GET", description="HTTP method")


def _as_response(result: Any) -> WebhookResponse:
    if isinstance(result, WebhookResponse):
        return result
    if isinstance(result, dict):
        try:
            status = int(result.get("status", 200))
        except (TypeError, ValueError):
            raise EffectAdapterError(
                f"Webhook adapter returned an invalid status: {result.get('status')!r}",
                capability="call_webhook",
            )
        return WebhookResponse(
            status=status, body=result.get("body"), headers=result.get("headers") or {}
        )
    raise EffectAdapterError(
        f"Webhook adapter returned {type(result).__name__}, expected a response",
        capability="call_webhook",
    )


class WebhookHandler(StepHandler):
    """
    Call an HTTP endpoint.

    The response ``{status, body}`` is the step output. Statuses of 400 and
    above fail the step unless listed in ``acceptStatus``.
    """

    step_type = "webhook"
    config_model = WebhookConfig

    async def execute(
        self, config: WebhookConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        effects = context.effects
        timeout = config.timeout_seconds(context.config.effect_timeout_seconds)

        logger.debug(f"{config.method} {config.url} (timeout {timeout}s)")
        result = await context.call_effect(
            "call_webhook",
            effects.call_webhook,
            config.url,
            config.method,
            dict(config.headers),
            config.body,
            timeout,
            timeout=timeout,
        )
        response = _as_response(result)

        if response.status >= 400 and response.status not in config.accept_status:
            raise EffectAdapterError(
                f"{config.method} {config.url} returned HTTP {response.status}",
                capability="call_webhook",
                step_id=step.id,
            )

        return StepOutcome(output={"status": response.status, "body": response.body})


class HttpRequestHandler(WebhookHandler):
    """Generic HTTP request step."""

    step_type = "http_request"
    config_model = HttpRequestConfig


class SwitchConfig(StepConfig):
    """Config of an on/off device step (wifi, bluetooth)."""

    enabled: Optional[bool] = Field(None, description="Desired state")
    state: Optional[str] = Field(None, description="Desired state as on/off text")

    @model_validator(mode="after")
    def resolve_state(self):
        if self.enabled is None:
            if self.state is None:
                raise ValueError("Either 'enabled' or 'state' is required")
            try:
                self.enabled = to_bool(self.state)
            except TypeMismatch:
                raise ValueError(f"State must be on or off, got {self.state!r}")
        return self


class LevelConfig(StepConfig):
    """Config of a level device step (brightness, volume)."""

    level: float = Field(..., ge=0, le=100, description="Level in percent")


class DeviceSwitchHandler(StepHandler):
    """Turn a device radio on or off."""

    config_model = SwitchConfig

    def __init__(self, step_type: str, kind: DeviceActionKind):
        self.step_type = step_type
        self.kind = kind

    async def execute(
        self, config: SwitchConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        params = {"enabled": config.enabled}
        await context.call_effect(
            "device_action",
            context.effects.device_action,
            self.kind,
            params,
            timeout=config.timeout_seconds(None),
        )
        return StepOutcome(output=params)


class DeviceLevelHandler(StepHandler):
    """Set a device level in percent."""

    config_model = LevelConfig

    def __init__(self, step_type: str, kind: DeviceActionKind):
        self.step_type = step_type
        self.kind = kind

    async def execute(
        self, config: LevelConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        params = {"level": config.level}
        await context.call_effect(
            "device_action",
            context.effects.device_action,
            self.kind,
            params,
            timeout=config.timeout_seconds(None),
        )
        return StepOutcome(output=params)


class AppConfig(StepConfig):
    """Config of an app launch step."""

    app_id: Optional[str] = Field(None, alias="appId", description="Application identifier")
    app_name: Optional[str] = Field(None, alias="appName", description="Application name")
    url: Optional[str] = Field(None, description="Deep link to open")

    @model_validator(mode="after")
    def require_target(self):
        if not (self.app_id or self.app_name or self.url):
            raise ValueError("One of 'appId', 'appName' or 'url' is required")
        return self


class AppHandler(StepHandler):
    """Open another application."""

    config_model = AppConfig

    def __init__(self, step_type: str = "app"):
        self.step_type = step_type

    async def execute(
        self, config: AppConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        target = config.app_id or config.app_name or config.url
        await context.call_effect(
            "launch_app",
            context.effects.launch_app,
            target,
            url=config.url,
            timeout=config.timeout_seconds(None),
        )
        return StepOutcome(output={"appId": target})


def effect_handlers() -> List[StepHandler]:
    """One handler instance per effect step type."""
    return [
        NotificationHandler(),
        SmsHandler(),
        EmailHandler(),
        WebhookHandler(),
        HttpRequestHandler(),
        DeviceSwitchHandler("wifi", DeviceActionKind.WIFI),
        DeviceSwitchHandler("bluetooth", DeviceActionKind.BLUETOOTH),
        DeviceLevelHandler("brightness", DeviceActionKind.BRIGHTNESS),
        DeviceLevelHandler("volume", DeviceActionKind.VOLUME),
        AppHandler("app"),
        AppHandler("launch_app"),
    ]
