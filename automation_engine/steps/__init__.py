"""Step handlers and their config models."""

from .base import FunctionStepHandler, StepConfig, StepHandler
from .builtin import (
    DelayHandler,
    GetVariableHandler,
    JsonParserHandler,
    MathHandler,
    TextHandler,
    VariableHandler,
)
from .effect_steps import (
    AppHandler,
    DeviceLevelHandler,
    DeviceSwitchHandler,
    EmailHandler,
    HttpRequestHandler,
    NotificationHandler,
    SmsHandler,
    WebhookHandler,
    effect_handlers,
)


def builtin_handlers():
    """One handler instance per built-in step type."""
    return [
        VariableHandler(),
        GetVariableHandler(),
        MathHandler(),
        TextHandler(),
        JsonParserHandler(),
        DelayHandler(),
    ]


__all__ = [
    "StepConfig",
    "StepHandler",
    "FunctionStepHandler",
    "VariableHandler",
    "GetVariableHandler",
    "MathHandler",
    "TextHandler",
    "JsonParserHandler",
    "DelayHandler",
    "NotificationHandler",
    "SmsHandler",
    "EmailHandler",
    "WebhookHandler",
    "HttpRequestHandler",
    "DeviceSwitchHandler",
    "DeviceLevelHandler",
    "AppHandler",
    "builtin_handlers",
    "effect_handlers",
]
