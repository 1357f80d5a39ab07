"""
Automation Definition

Parse, validate, and represent automations and their steps from stored records
(dictionaries, JSON or YAML).
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import yaml

from .errors import InvalidAutomation, TypeMismatch
from .runtime_data.variables import to_bool

CONTROL_FLOW_TYPES = ("condition", "loop", "group", "random")


def _parse_flag(value: Any, name: str, owner: str, step_id: Optional[str] = None) -> bool:
    """Read a stored on/off flag; missing means on, text such as "false" is honored."""
    if value is None:
        return True
    try:
        return to_bool(value)
    except TypeMismatch:
        raise InvalidAutomation(f"{owner} has an invalid '{name}' flag: {value!r}", step_id)


@dataclass
class Branch:
    """One weighted child list of a random step."""

    steps: List["Step"] = field(default_factory=list)
    weight: float = 1.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Branch":
        """Create from dictionary."""
        if not isinstance(data, dict):
            raise InvalidAutomation(f"Branch must be an object, got {type(data).__name__}")
        weight = data.get("weight", 1)
        if weight is None:
            weight = 1
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise InvalidAutomation(f"Branch weight must be a number, got {weight!r}")
        return cls(
            steps=Step.list_from_dicts(data.get("steps", []), "branch steps"),
            weight=float(weight),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"weight": self.weight, "steps": [s.to_dict() for s in self.steps]}


@dataclass
class Step:
    """Automation step definition."""

    id: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    title: str = ""

    # Condition step specific
    then_steps: List["Step"] = field(default_factory=list)
    else_steps: List["Step"] = field(default_factory=list)

    # Loop and group step specific
    body_steps: List["Step"] = field(default_factory=list)

    # Random step specific
    branches: List[Branch] = field(default_factory=list)

    @property
    def is_control_flow(self) -> bool:
        return self.type in CONTROL_FLOW_TYPES

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        """
        Create from dictionary.

        Child lists are read from ``children`` ({then, else, body, branches}).
        For hand-written YAML the same keys are also accepted at the top level,
        and ``steps`` is accepted as an alias of ``body``.

        Args:
            data: Step record

        Returns:
            Step instance

        Raises:
            InvalidAutomation: If the record is malformed
        """
        if not isinstance(data, dict):
            raise InvalidAutomation(f"Step must be an object, got {type(data).__name__}")

        step_id = data.get("id")
        step_type = data.get("type")
        if not step_id or not isinstance(step_id, str):
            raise InvalidAutomation(f"Step is missing a string 'id': {data!r}")
        if not step_type or not isinstance(step_type, str):
            raise InvalidAutomation(f"Step '{step_id}' is missing a string 'type'", step_id)

        config = data.get("config") or {}
        if not isinstance(config, dict):
            raise InvalidAutomation(f"Step '{step_id}' config must be an object", step_id)

        children = data.get("children") or {}
        if not isinstance(children, dict):
            raise InvalidAutomation(f"Step '{step_id}' children must be an object", step_id)

        def child_list(*keys: str) -> List["Step"]:
            for key in keys:
                if key in children:
                    return cls.list_from_dicts(children[key], f"'{step_id}'.{key}")
            for key in keys:
                if key in data:
                    return cls.list_from_dicts(data[key], f"'{step_id}'.{key}")
            return []

        raw_branches = children.get("branches", data.get("branches", []))
        if not isinstance(raw_branches, list):
            raise InvalidAutomation(f"Step '{step_id}' branches must be a list", step_id)

        return cls(
            id=step_id,
            type=step_type,
            config=dict(config),
            enabled=_parse_flag(data.get("enabled"), "enabled", f"Step '{step_id}'", step_id),
            title=data.get("title", "") or "",
            then_steps=child_list("then"),
            else_steps=child_list("else"),
            body_steps=child_list("body", "steps"),
            branches=[Branch.from_dict(b) for b in raw_branches],
        )

    @classmethod
    def list_from_dicts(cls, items: Any, where: str = "steps") -> List["Step"]:
        """Parse a list of step records."""
        if items is None:
            return []
        if not isinstance(items, list):
            raise InvalidAutomation(f"{where} must be a list, got {type(items).__name__}")
        return [cls.from_dict(item) for item in items]

    def child_lists(self) -> Iterator[tuple]:
        """Yield (slot name, child steps) pairs for every nested list."""
        if self.then_steps:
            yield "then", self.then_steps
        if self.else_steps:
            yield "else", self.else_steps
        if self.body_steps:
            yield "body", self.body_steps
        for index, branch in enumerate(self.branches):
            yield f"branches[{index}]", branch.steps

    def iter_steps(self) -> Iterator["Step"]:
        """Yield this step and every nested step, depth-first."""
        yield self
        for _, steps in self.child_lists():
            for child in steps:
                yield from child.iter_steps()

    def get_all_step_ids(self) -> List[str]:
        """
        Get all step IDs including nested steps.

        Returns:
            List of all step IDs
        """
        return [step.id for step in self.iter_steps()]

    def depth(self) -> int:
        """Nesting depth of the deepest child list below this step."""
        deepest = 0
        for _, steps in self.child_lists():
            for child in steps:
                deepest = max(deepest, 1 + child.depth())
        return deepest

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the stored record shape."""
        result: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "config": dict(self.config),
            "enabled": self.enabled,
        }
        if self.title:
            result["title"] = self.title

        children: Dict[str, Any] = {}
        if self.then_steps:
            children["then"] = [s.to_dict() for s in self.then_steps]
        if self.else_steps:
            children["else"] = [s.to_dict() for s in self.else_steps]
        if self.body_steps:
            children["body"] = [s.to_dict() for s in self.body_steps]
        if self.branches:
            children["branches"] = [b.to_dict() for b in self.branches]
        if children:
            result["children"] = children

        return result

    def __repr__(self) -> str:
        """String representation."""
        return f"Step(id='{self.id}', type='{self.type}', enabled={self.enabled})"


@dataclass
class Automation:
    """
    Automation definition.

    An ordered list of top-level steps plus metadata. Steps are addressed by
    their stable ``id``, never by position.
    """

    id: str
    name: str = ""
    description: str = ""
    is_active: bool = True
    steps: List[Step] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Automation":
        """
        Create from an automation record.

        Args:
            data: Automation record

        Returns:
            Automation instance

        Raises:
            InvalidAutomation: If the record is malformed
        """
        if not isinstance(data, dict):
            raise InvalidAutomation(
                f"Automation must be an object, got {type(data).__name__}"
            )

        automation_id = data.get("id")
        if not automation_id:
            automation_id = data.get("name") or "unnamed"

        return cls(
            id=str(automation_id),
            name=data.get("name", "") or data.get("title", "") or "",
            description=data.get("description", "") or "",
            is_active=_parse_flag(
                data.get("is_active"), "is_active", f"Automation '{automation_id}'"
            ),
            steps=Step.list_from_dicts(data.get("steps", [])),
            metadata=data.get("metadata", {}) or {},
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Automation":
        """
        Parse an automation record from JSON.

        Raises:
            InvalidAutomation: If the JSON is invalid
        """
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise InvalidAutomation(f"Invalid JSON: {e}")
        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "Automation":
        """
        Parse an automation from YAML.

        The document may hold the record directly or under an ``automation`` key.

        Raises:
            InvalidAutomation: If the YAML is invalid
        """
        try:
            data = yaml.safe_load(yaml_str)
        except yaml.YAMLError as e:
            raise InvalidAutomation(f"Invalid YAML: {e}")

        if not data:
            raise InvalidAutomation("YAML document is empty")

        if isinstance(data, dict) and "automation" in data:
            data = data["automation"]
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, file_path: str) -> "Automation":
        """
        Load an automation from a .json, .yaml or .yml file.

        Raises:
            FileNotFoundError: If file doesn't exist
            InvalidAutomation: If the content is invalid
        """
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Automation file not found: {file_path}")

        with open(path, "r") as f:
            content = f.read()

        if path.suffix.lower() == ".json":
            return cls.from_json(content)
        return cls.from_yaml(content)

    def iter_steps(self) -> Iterator[Step]:
        """Yield every step, depth-first in document order."""
        for step in self.steps:
            yield from step.iter_steps()

    def validate(self, max_depth: Optional[int] = None) -> List[str]:
        """
        Validate the automation structure.

        Step configs are validated by their handlers at dispatch time.

        Args:
            max_depth: Optional deepest allowed nesting of child lists

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        seen = set()
        duplicates = []
        for step in self.iter_steps():
            if step.id in seen and step.id not in duplicates:
                duplicates.append(step.id)
            seen.add(step.id)
        if duplicates:
            errors.append(f"Duplicate step IDs found: {', '.join(duplicates)}")

        for step in self.iter_steps():
            if step.type == "random" and step.branches:
                weights = [b.weight for b in step.branches]
                if any(w < 0 for w in weights):
                    errors.append(f"Random step '{step.id}' has a negative branch weight")
                elif sum(weights) <= 0:
                    errors.append(f"Random step '{step.id}' branch weights must sum above zero")
            if not step.is_control_flow and any(True for _ in step.child_lists()):
                errors.append(f"Step '{step.id}' of type '{step.type}' cannot have children")

        if max_depth is not None:
            for step in self.steps:
                if step.depth() > max_depth:
                    errors.append(
                        f"Step '{step.id}' nests deeper than the limit of {max_depth}"
                    )

        return errors

    def get_step(self, step_id: str) -> Optional[Step]:
        """
        Get a step by ID, searching nested lists.

        Returns:
            Step or None if not found
        """
        for step in self.iter_steps():
            if step.id == step_id:
                return step
        return None

    def index_of(self, step_id: str) -> int:
        """Position of a top-level step, or -1."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1

    def add_step(self, step: Step, index: Optional[int] = None) -> None:
        """
        Insert a top-level step (appends when ``index`` is None).

        Raises:
            InvalidAutomation: If the step id is already used
        """
        if self.get_step(step.id) is not None:
            raise InvalidAutomation(f"Step id '{step.id}' already exists", step.id)
        if index is None:
            self.steps.append(step)
        else:
            self.steps.insert(index, step)

    def remove_step(self, step_id: str) -> Step:
        """
        Remove a top-level step by ID.

        Raises:
            KeyError: If no such top-level step exists
        """
        index = self.index_of(step_id)
        if index < 0:
            raise KeyError(step_id)
        return self.steps.pop(index)

    def move_step(self, step_id: str, new_index: int) -> None:
        """Move a top-level step to a new position."""
        step = self.remove_step(step_id)
        new_index = max(0, min(new_index, len(self.steps)))
        self.steps.insert(new_index, step)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the stored record shape."""
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "steps": [step.to_dict() for step in self.steps],
        }
        if self.metadata:
            result["metadata"] = self.metadata
        return result

    def __repr__(self) -> str:
        """String representation."""
        return f"Automation(id='{self.id}', name='{self.name}', steps={len(self.steps)})"


class TriggerSource(str, Enum):
    """Where a run was launched from."""

    MANUAL = "manual"
    NFC = "nfc"
    QR = "qr"
    SCHEDULED = "scheduled"


@dataclass
class Trigger:
    """
    Triggering context for a run.

    The payload is already decoded by the trigger layer; it may carry
    ``automationId`` and seed ``variables``.
    """

    source: TriggerSource = TriggerSource.MANUAL
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def manual(cls, **variables: Any) -> "Trigger":
        """Create a manual trigger seeded with variables."""
        return cls(TriggerSource.MANUAL, {"variables": variables} if variables else {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trigger":
        """
        Create from dictionary.

        Raises:
            InvalidAutomation: If the source is unknown
        """
        source = data.get("source", TriggerSource.MANUAL.value)
        try:
            source = TriggerSource(source)
        except ValueError:
            raise InvalidAutomation(f"Unknown trigger source: {source!r}")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise InvalidAutomation("Trigger payload must be an object")
        return cls(source=source, payload=payload)

    @property
    def automation_id(self) -> Optional[str]:
        return self.payload.get("automationId")

    @property
    def variables(self) -> Dict[str, Any]:
        variables = self.payload.get("variables") or {}
        if not isinstance(variables, dict):
            raise InvalidAutomation("Trigger payload 'variables' must be an object")
        return variables

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "source": self.source.value,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }
