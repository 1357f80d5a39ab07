"""
Variable Store

Per-run key/value storage with {{ name }} template resolution and the type
coercion rules shared by every step.
"""

import json
import logging
import math
import re
from copy import deepcopy
from typing import Any, Dict, Iterator, List, Optional, Union

from ..errors import TypeMismatch, UndefinedVariable, UnresolvedVariable

logger = logging.getLogger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

_TRUE_STRINGS = ("true", "1", "yes", "on")
_FALSE_STRINGS = ("false", "0", "no", "off", "")

_MISSING = object()


def to_number(value: Any) -> Union[int, float]:
    """
    Coerce a value to a number.

    Numeric strings parse ("5" -> 5, "2.5" -> 2.5), booleans map to 1/0.

    Raises:
        TypeMismatch: If the value has no numeric reading
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            raise TypeMismatch(
                f"Expected a number, got non-numeric text {value!r}",
                value=value,
                expected="number",
            )
        if math.isnan(number):
            raise TypeMismatch(f"Expected a number, got {value!r}", value=value, expected="number")
        return number
    raise TypeMismatch(
        f"Expected a number, got {type(value).__name__}", value=value, expected="number"
    )


def to_bool(value: Any) -> bool:
    """
    Coerce a value to a boolean.

    Raises:
        TypeMismatch: If a string is not a recognized boolean spelling
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise TypeMismatch(f"Expected a boolean, got {value!r}", value=value, expected="boolean")
    if isinstance(value, (list, dict)):
        return len(value) > 0
    raise TypeMismatch(
        f"Expected a boolean, got {type(value).__name__}", value=value, expected="boolean"
    )


def to_text(value: Any) -> str:
    """Render a value as template text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def coerce(value: Any, type_name: str) -> Any:
    """
    Coerce a value to a declared variable type.

    Args:
        value: Raw value
        type_name: One of text, number, boolean, list, object

    Raises:
        TypeMismatch: If the value cannot be converted
    """
    if type_name in ("text", "string"):
        return to_text(value)
    if type_name == "number":
        return to_number(value)
    if type_name == "boolean":
        return to_bool(value)
    if type_name in ("list", "object"):
        expected = list if type_name == "list" else dict
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                raise TypeMismatch(
                    f"Expected {type_name} JSON, got {value!r}", value=value, expected=type_name
                )
        if not isinstance(value, expected):
            raise TypeMismatch(
                f"Expected {type_name}, got {type(value).__name__}",
                value=value,
                expected=type_name,
            )
        return value
    raise TypeMismatch(f"Unknown variable type '{type_name}'", value=value, expected=type_name)


class VariableStore:
    """
    Variable store for one run.

    Names are plain strings. Lookups fall back to dot-notation paths into
    structured values, so ``{{ response.body.id }}`` reads nested data.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None, strict: bool = True):
        """
        Initialize the store.

        Args:
            initial: Seed variables
            strict: Fail unresolved template references instead of leaving them in place
        """
        self.strict = strict
        self._values: Dict[str, Any] = {}
        for name, value in (initial or {}).items():
            self.set(name, value)

    def set(self, name: str, value: Any) -> None:
        """
        Set a variable value.

        Raises:
            ValueError: If the name is empty
        """
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Variable name must be a non-empty string")
        self._values[name.strip()] = value
        logger.debug(f"Variable set: {name} ({type(value).__name__})")

    def get(self, name: str, default: Any = None) -> Any:
        """
        Get a variable value using the name or a dot-notation path.

        Returns:
            Value or ``default`` if not found
        """
        value = self._lookup(name)
        return default if value is _MISSING else value

    def require(self, name: str) -> Any:
        """
        Get a variable value that must exist.

        Raises:
            UndefinedVariable: If the variable is not defined
        """
        value = self._lookup(name)
        if value is _MISSING:
            raise UndefinedVariable(name)
        return value

    def has(self, name: str) -> bool:
        """Check if a variable (or dot-notation path) is defined."""
        return self._lookup(name) is not _MISSING

    def delete(self, name: str) -> bool:
        """Remove a variable. Returns True if it existed."""
        return self._values.pop(name, _MISSING) is not _MISSING

    def _lookup(self, name: str) -> Any:
        name = name.strip()
        if name in self._values:
            return self._values[name]

        parts = name.split(".")
        if len(parts) < 2 or parts[0] not in self._values:
            return _MISSING

        obj = self._values[parts[0]]
        for part in parts[1:]:
            if isinstance(obj, dict):
                if part not in obj:
                    return _MISSING
                obj = obj[part]
            elif isinstance(obj, list) and part.lstrip("-").isdigit():
                index = int(part)
                if not -len(obj) <= index < len(obj):
                    return _MISSING
                obj = obj[index]
            else:
                return _MISSING
        return obj

    def references(self, template: str) -> List[str]:
        """List the variable names referenced by a template."""
        return [m.group(1).strip() for m in TEMPLATE_PATTERN.finditer(template)]

    def resolve(self, template: str) -> str:
        """
        Substitute every {{ name }} reference with its text value.

        Args:
            template: Template string

        Returns:
            Resolved string

        Raises:
            UnresolvedVariable: If a reference is undefined and the store is strict
        """
        if not isinstance(template, str):
            return to_text(template)

        def replace(match: "re.Match") -> str:
            name = match.group(1).strip()
            value = self._lookup(name)
            if value is _MISSING:
                if self.strict:
                    raise UnresolvedVariable(name)
                logger.warning(f"Variable reference not found: {name}")
                return match.group(0)
            return to_text(value)

        return TEMPLATE_PATTERN.sub(replace, template)

    def resolve_value(self, value: Any) -> Any:
        """
        Resolve templates inside a config value.

        A string that is exactly one reference resolves to the raw value, so
        ``"{{ count }}"`` keeps its number type. Dicts and lists are resolved
        recursively.

        Raises:
            UnresolvedVariable: If a reference is undefined and the store is strict
        """
        if isinstance(value, str):
            match = TEMPLATE_PATTERN.fullmatch(value.strip())
            if match:
                name = match.group(1).strip()
                resolved = self._lookup(name)
                if resolved is _MISSING:
                    if self.strict:
                        raise UnresolvedVariable(name)
                    return value
                return deepcopy(resolved)
            return self.resolve(value)
        if isinstance(value, dict):
            return self.resolve_config(value)
        if isinstance(value, list):
            return [self.resolve_value(item) for item in value]
        return value

    def resolve_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve all templates in a config dictionary."""
        return {key: self.resolve_value(value) for key, value in config.items()}

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of all variables."""
        return deepcopy(self._values)

    def names(self) -> List[str]:
        return list(self._values.keys())

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        """String representation."""
        return f"VariableStore(names={self.names()})"
