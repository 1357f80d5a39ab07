"""
Built-in Steps

Handlers the engine implements itself, without effect adapters:
variable, get_variable, math, text, json_parser and delay.
"""

import json
import logging
import math
import re
from typing import Any, List, Optional

from pydantic import Field, ValidationInfo, field_validator, model_validator

from ..definition import Step
from ..errors import StepValidationError, TypeMismatch
from ..runtime_data import ExecutionContext, StepOutcome, coerce, to_number, to_text
from .base import StepConfig, StepHandler

logger = logging.getLogger(__name__)

VARIABLE_TYPES = ("text", "string", "number", "boolean", "list", "object")

MATH_OPERATIONS = (
    "add",
    "subtract",
    "multiply",
    "divide",
    "modulo",
    "power",
    "min",
    "max",
    "round",
)

TEXT_ACTIONS = ("combine", "replace", "uppercase", "lowercase", "trim", "length", "format")

# Integer math results longer than this many digits are rejected
MAX_INTEGER_DIGITS = 1000
_MAX_INTEGER_BITS = int(MAX_INTEGER_DIGITS * math.log2(10)) + 1

MAX_JSON_SIZE = 1024 * 1024
MAX_JSON_PATH_DEPTH = 10

_PATH_INDEX = re.compile(r"\[(\d+)\]")
_PATH_PROPERTY = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")
_MISSING = object()


class VariableConfig(StepConfig):
    """Config of a variable step."""

    name: str = Field(..., min_length=1, description="Variable name")
    value: Any = Field(None, description="Value to store (templates resolved)")
    type: Optional[str] = Field(None, description="Optional type to coerce the value to")

    @field_validator("type")
    @classmethod
    def validate_type(cls, v):
        """Validate the declared variable type."""
        if v is not None and v not in VARIABLE_TYPES:
            raise ValueError(f"Variable type must be one of: {', '.join(VARIABLE_TYPES)}")
        return v


class VariableHandler(StepHandler):
    """Write a value to the variable store."""

    step_type = "variable"
    config_model = VariableConfig
    fatal_by_default = False

    async def execute(
        self, config: VariableConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        value = config.value
        if config.type:
            value = coerce(value, config.type)
        context.variables.set(config.name, value)
        return StepOutcome(output=value, message=f"Set {config.name}")


class GetVariableConfig(StepConfig):
    """Config of a get_variable step."""

    name: str = Field(..., min_length=1, description="Variable name or dotted path")
    default: Any = Field(None, description="Value used when the variable is missing")


class GetVariableHandler(StepHandler):
    """
    Read a variable.

    Without a ``default`` a missing variable fails with UndefinedVariable.
    The value becomes the step output, so ``outputVariable`` copies it.
    """

    step_type = "get_variable"
    config_model = GetVariableConfig
    fatal_by_default = False

    async def execute(
        self, config: GetVariableConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        if "default" in config.model_fields_set:
            value = context.variables.get(config.name, config.default)
        else:
            value = context.variables.require(config.name)
        return StepOutcome(output=value)


class MathConfig(StepConfig):
    """Config of a math step."""

    operation: str = Field(..., description="Arithmetic operation")
    number1: Any = Field(..., description="First operand")
    number2: Any = Field(None, validate_default=True, description="Second operand")

    @field_validator("operation")
    @classmethod
    def validate_operation(cls, v):
        """Validate the operation name."""
        op = str(v).strip().lower()
        if op not in MATH_OPERATIONS:
            raise ValueError(f"Operation must be one of: {', '.join(MATH_OPERATIONS)}")
        return op

    @field_validator("number2")
    @classmethod
    def validate_number2(cls, v, info: ValidationInfo):
        """Require a second operand for binary operations and reject division by zero."""
        op = info.data.get("operation")
        if op is None or op == "round":
            return v
        if v is None or v == "":
            raise ValueError(f"Second operand is required for '{op}'")
        if op in ("divide", "modulo"):
            try:
                if to_number(v) == 0:
                    raise ValueError("Cannot divide by zero")
            except TypeMismatch:
                # Non-numeric operands fail with TypeMismatch at execution
                pass
        return v


def _normalize(number: Any) -> Any:
    if isinstance(number, float) and number.is_integer() and abs(number) < 2**53:
        return int(number)
    return number


class MathHandler(StepHandler):
    """Arithmetic over numbers, numeric strings and variable references."""

    step_type = "math"
    config_model = MathConfig
    fatal_by_default = False

    async def execute(
        self, config: MathConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        op = config.operation
        a = to_number(config.number1)

        if op == "round":
            digits = int(to_number(config.number2)) if config.number2 not in (None, "") else 0
            result = round(a, digits)
        else:
            b = to_number(config.number2)
            if op == "power":
                self._check_power(a, b)
            try:
                result = self._apply(op, a, b)
            except OverflowError:
                raise TypeMismatch(f"Result of {op} is out of range", value=[a, b], expected="number")
            if isinstance(result, complex) or (isinstance(result, float) and math.isnan(result)):
                raise TypeMismatch(
                    f"Result of {op}({a}, {b}) is not a real number", value=[a, b], expected="number"
                )
            if isinstance(result, int) and result.bit_length() > _MAX_INTEGER_BITS:
                raise TypeMismatch(
                    f"Result of {op} has more than {MAX_INTEGER_DIGITS} digits",
                    value=[a, b],
                    expected="number",
                )

        result = _normalize(result)
        logger.debug(f"math {op} done for step '{step.id}'")
        return StepOutcome(output=result)

    @staticmethod
    def _check_power(base: Any, exponent: Any) -> None:
        """Reject integer powers whose result would exceed MAX_INTEGER_DIGITS."""
        if not isinstance(base, int) or not isinstance(exponent, int):
            return
        if abs(base) <= 1 or exponent <= 0:
            return
        if exponent * math.log10(abs(base)) > MAX_INTEGER_DIGITS:
            raise TypeMismatch(
                f"Result of power has more than {MAX_INTEGER_DIGITS} digits",
                value=[base, exponent],
                expected="number",
            )

    @staticmethod
    def _apply(op: str, a: Any, b: Any) -> Any:
        if op == "add":
            return a + b
        if op == "subtract":
            return a - b
        if op == "multiply":
            return a * b
        if op == "divide":
            return a / b
        if op == "modulo":
            return a % b
        if op == "power":
            return a**b
        if op == "min":
            return min(a, b)
        return max(a, b)


class TextConfig(StepConfig):
    """Config of a text step."""

    action: str = Field(..., description="Text action")
    text1: Any = Field("", description="Primary text")
    text2: Any = Field(None, description="Second text (combine) or search text (replace)")
    separator: Optional[str] = Field(
        None, description="Joiner for combine, replacement for replace"
    )

    @field_validator("action")
    @classmethod
    def validate_action(cls, v):
        """Validate the action name."""
        action = str(v).strip().lower()
        if action not in TEXT_ACTIONS:
            raise ValueError(f"Action must be one of: {', '.join(TEXT_ACTIONS)}")
        return action

    @model_validator(mode="after")
    def require_search_text(self):
        if self.action == "replace" and not to_text(self.text2):
            raise ValueError("replace requires a non-empty 'text2' to search for")
        return self


class TextHandler(StepHandler):
    """String transforms."""

    step_type = "text"
    config_model = TextConfig
    fatal_by_default = False

    async def execute(
        self, config: TextConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        text = to_text(config.text1)
        action = config.action

        if action == "combine":
            separator = " " if config.separator is None else config.separator
            result = text if config.text2 is None else f"{text}{separator}{to_text(config.text2)}"
        elif action == "replace":
            result = text.replace(to_text(config.text2), config.separator or "")
        elif action == "uppercase":
            result = text.upper()
        elif action == "lowercase":
            result = text.lower()
        elif action == "trim":
            result = text.strip()
        elif action == "length":
            result = len(text)
        else:
            # format: text1 may itself hold a stored template
            result = context.variables.resolve(text)

        return StepOutcome(output=result)


def _parse_json_path(path: str) -> List[str]:
    """
    Split a JSON path into segments.

    Dot notation (``user.profile.name``) and bracket indexes (``items[0].title``)
    are accepted; brackets are normalized to dots.

    Raises:
        ValueError: On an invalid segment or a path deeper than MAX_JSON_PATH_DEPTH
    """
    normalized = _PATH_INDEX.sub(r".\1", path.strip()).lstrip(".")
    segments = [part for part in normalized.split(".") if part]
    for segment in segments:
        if not (segment.isdecimal() or _PATH_PROPERTY.match(segment)):
            raise ValueError(
                f"Invalid path segment {segment!r}; use dot notation (user.name) "
                f"or bracket indexes (items[0])"
            )
    if len(segments) > MAX_JSON_PATH_DEPTH:
        raise ValueError(f"Path depth exceeds the maximum of {MAX_JSON_PATH_DEPTH} levels")
    return segments


def _extract_json_path(data: Any, segments: List[str]) -> Any:
    """Walk parsed JSON along path segments; returns _MISSING when a segment is absent."""
    current = data
    for segment in segments:
        if isinstance(current, list) and segment.isdecimal():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        elif isinstance(current, dict) and segment in current:
            current = current[segment]
        else:
            return _MISSING
    return current


class JsonParserConfig(StepConfig):
    """Config of a json_parser step."""

    json_data: Any = Field(..., alias="jsonData", description="JSON text, or an already parsed value")
    path: Optional[str] = Field(None, description="Dot/bracket path of the value to extract")
    default_value: Any = Field(
        None, alias="defaultValue", description="Value used when the path is missing"
    )

    @field_validator("json_data")
    @classmethod
    def validate_json_data(cls, v):
        """Require JSON data and enforce the size limit."""
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError("JSON data is required")
        if isinstance(v, str) and len(v.encode("utf-8")) > MAX_JSON_SIZE:
            raise ValueError(f"JSON data is larger than {MAX_JSON_SIZE // 1024}KB")
        return v

    @field_validator("path")
    @classmethod
    def validate_path(cls, v):
        """Validate path segments and depth."""
        if v is not None:
            _parse_json_path(v)
        return v

    @model_validator(mode="after")
    def require_output_variable(self):
        if not self.output_variable:
            raise ValueError("json_parser requires an 'outputVariable'")
        return self


class JsonParserHandler(StepHandler):
    """
    Parse JSON text and extract a value from it.

    Without a ``path`` the whole document is the output. A missing path
    yields ``defaultValue`` when one is given and None otherwise. Text that
    is not valid JSON fails with TypeMismatch.
    """

    step_type = "json_parser"
    config_model = JsonParserConfig
    fatal_by_default = False

    async def execute(
        self, config: JsonParserConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        data = config.json_data
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except (ValueError, RecursionError) as e:
                raise TypeMismatch(f"Invalid JSON format: {e}", expected="JSON")

        if not config.path:
            return StepOutcome(output=data)

        value = _extract_json_path(data, _parse_json_path(config.path))
        if value is _MISSING:
            logger.debug(f"Path '{config.path}' not found in JSON for step '{step.id}'")
            value = config.default_value
        return StepOutcome(output=value)


class DelayConfig(StepConfig):
    """Config of a delay step."""

    delay: Optional[float] = Field(None, ge=0, description="Delay in milliseconds")
    seconds: Optional[float] = Field(None, ge=0, description="Delay in seconds")

    @model_validator(mode="after")
    def require_duration(self):
        if self.delay is None and self.seconds is None:
            raise ValueError("Either 'delay' (milliseconds) or 'seconds' is required")
        return self

    @property
    def duration_seconds(self) -> float:
        if self.seconds is not None:
            return self.seconds
        return self.delay / 1000.0


class DelayHandler(StepHandler):
    """Suspend the run, waking early if the run is cancelled."""

    step_type = "delay"
    config_model = DelayConfig
    fatal_by_default = False

    async def execute(
        self, config: DelayConfig, context: ExecutionContext, step: Step
    ) -> StepOutcome:
        duration = config.duration_seconds
        limit = context.config.max_delay_seconds
        if duration > limit:
            field_name = "seconds" if config.seconds is not None else "delay"
            raise StepValidationError(
                f"Delay of {duration}s exceeds the maximum of {limit}s",
                step_id=step.id,
                errors=[
                    {
                        "field": field_name,
                        "message": f"must be at most {limit} seconds",
                        "value": config.seconds if config.seconds is not None else config.delay,
                    }
                ],
            )

        logger.debug(f"Delaying {duration}s")
        await context.token.sleep(duration)
        return StepOutcome(output={"seconds": duration})
