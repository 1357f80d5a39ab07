"""Tests for automation definitions."""

import json

import pytest

from automation_engine import Automation, InvalidAutomation, Step, Trigger, TriggerSource


NESTED_YAML = """
automation:
  id: morning
  name: Morning routine
  steps:
    - id: check
      type: condition
      config:
        expression: "hour < 9"
      children:
        then:
          - id: lights
            type: brightness
            config: {level: 80}
        else:
          - id: quiet
            type: notification
            config: {message: late}
    - id: pick
      type: random
      branches:
        - weight: 3
          steps:
            - id: a
              type: notification
              config: {message: a}
        - steps:
            - id: b
              type: notification
              config: {message: b}
    - id: repeat
      type: loop
      config: {type: count, count: 2}
      steps:
        - id: tick
          type: delay
          config: {delay: 1}
"""


class TestAutomationParsing:
    """Test cases for parsing automations."""

    def test_from_yaml_nested(self):
        """Test children under both `children` and top-level keys."""
        automation = Automation.from_yaml(NESTED_YAML)

        assert automation.id == "morning"
        assert automation.name == "Morning routine"
        assert [s.id for s in automation.steps] == ["check", "pick", "repeat"]

        check = automation.steps[0]
        assert [s.id for s in check.then_steps] == ["lights"]
        assert [s.id for s in check.else_steps] == ["quiet"]

        pick = automation.steps[1]
        assert [b.weight for b in pick.branches] == [3.0, 1.0]
        assert pick.branches[1].steps[0].id == "b"

        repeat = automation.steps[2]
        assert [s.id for s in repeat.body_steps] == ["tick"]
        assert automation.validate() == []

    def test_from_json(self):
        """Test parsing a JSON record."""
        record = {"id": "x", "steps": [{"id": "s1", "type": "notification"}]}

        automation = Automation.from_json(json.dumps(record))

        assert automation.steps[0].type == "notification"
        assert automation.steps[0].enabled is True

    def test_from_file(self, tmp_path):
        """Test loading from YAML and JSON files."""
        yaml_path = tmp_path / "auto.yaml"
        yaml_path.write_text(NESTED_YAML)
        json_path = tmp_path / "auto.json"
        json_path.write_text(json.dumps({"id": "j", "steps": []}))

        assert Automation.from_file(str(yaml_path)).id == "morning"
        assert Automation.from_file(str(json_path)).id == "j"
        with pytest.raises(FileNotFoundError):
            Automation.from_file(str(tmp_path / "missing.yaml"))

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "steps: [unclosed",
            "id: x\nsteps:\n  - type: notification\n",
            "id: x\nsteps:\n  - id: s1\n",
            "id: x\nsteps: 5\n",
            "id: x\nsteps:\n  - id: s1\n    type: delay\n    config: [1]\n",
            "id: x\nsteps:\n  - id: r\n    type: random\n    branches:\n      - weight: heavy\n",
        ],
    )
    def test_malformed_records(self, text):
        """Test that malformed records raise InvalidAutomation."""
        with pytest.raises(InvalidAutomation):
            Automation.from_yaml(text)

    def test_invalid_json(self):
        """Test that broken JSON raises InvalidAutomation."""
        with pytest.raises(InvalidAutomation):
            Automation.from_json("{not json")

    @pytest.mark.parametrize(
        "value,expected",
        [(False, False), ("false", False), ("0", False), ("no", False), ("true", True), (None, True)],
    )
    def test_enabled_flag_text(self, value, expected):
        """Test that stored on/off flags are read by value, not by truthiness."""
        automation = Automation.from_dict(
            {
                "id": "flags",
                "is_active": value,
                "steps": [{"id": "s1", "type": "notification", "enabled": value}],
            }
        )

        assert automation.steps[0].enabled is expected
        assert automation.is_active is expected

    def test_invalid_enabled_flag(self):
        """Test that an unreadable flag is a malformed record."""
        with pytest.raises(InvalidAutomation):
            Automation.from_dict(
                {"id": "flags", "steps": [{"id": "s1", "type": "notification", "enabled": "maybe"}]}
            )
        with pytest.raises(InvalidAutomation):
            Automation.from_dict({"id": "flags", "is_active": "sometimes", "steps": []})

    def test_to_dict_shape(self):
        """Test the stored record shape, children nested under `children`."""
        automation = Automation.from_yaml(NESTED_YAML)
        record = automation.to_dict()

        check = record["steps"][0]
        assert set(check) == {"id", "type", "config", "enabled", "children"}
        assert set(check["children"]) == {"then", "else"}
        assert record["steps"][1]["children"]["branches"][0]["weight"] == 3.0
        assert "children" not in check["children"]["then"][0]

        assert Automation.from_dict(record).to_dict() == record


class TestAutomationValidation:
    """Test cases for Automation.validate."""

    def test_duplicate_ids_across_nesting(self):
        """Test that ids must be unique across the whole tree."""
        automation = Automation.from_dict(
            {
                "id": "dup",
                "steps": [
                    {"id": "a", "type": "notification"},
                    {"id": "g", "type": "group", "children": {"body": [{"id": "a", "type": "delay"}]}},
                ],
            }
        )

        errors = automation.validate()

        assert len(errors) == 1
        assert "Duplicate step IDs" in errors[0]

    def test_children_on_leaf(self):
        """Test that leaf steps cannot have children."""
        automation = Automation.from_dict(
            {
                "id": "leaf",
                "steps": [
                    {"id": "n", "type": "notification", "children": {"then": [{"id": "x", "type": "delay"}]}}
                ],
            }
        )

        assert any("cannot have children" in e for e in automation.validate())

    def test_negative_weight(self):
        """Test that branch weights must not be negative."""
        automation = Automation.from_dict(
            {
                "id": "w",
                "steps": [
                    {
                        "id": "r",
                        "type": "random",
                        "branches": [{"weight": -1, "steps": []}, {"weight": 2, "steps": []}],
                    }
                ],
            }
        )

        assert any("negative" in e for e in automation.validate())

    def test_max_depth(self):
        """Test the optional nesting depth limit."""
        automation = Automation.from_dict(
            {
                "id": "deep",
                "steps": [
                    {
                        "id": "g1",
                        "type": "group",
                        "children": {
                            "body": [
                                {
                                    "id": "g2",
                                    "type": "group",
                                    "children": {"body": [{"id": "n", "type": "notification"}]},
                                }
                            ]
                        },
                    }
                ],
            }
        )

        assert automation.steps[0].depth() == 2
        assert automation.validate(max_depth=2) == []
        assert len(automation.validate(max_depth=1)) == 1


class TestAutomationEditing:
    """Test cases for editing step lists."""

    @pytest.fixture
    def automation(self):
        return Automation(
            id="edit",
            steps=[Step(id=name, type="notification") for name in ("a", "b", "c")],
        )

    def test_add_step(self, automation):
        """Test appending and inserting steps."""
        automation.add_step(Step(id="d", type="delay"))
        automation.add_step(Step(id="first", type="delay"), index=0)

        assert [s.id for s in automation.steps] == ["first", "a", "b", "c", "d"]

        with pytest.raises(InvalidAutomation):
            automation.add_step(Step(id="a", type="delay"))

    def test_move_step(self, automation):
        """Test reordering by id."""
        automation.move_step("c", 0)
        automation.move_step("a", 99)

        assert [s.id for s in automation.steps] == ["c", "b", "a"]

    def test_remove_step(self, automation):
        """Test removing by id."""
        removed = automation.remove_step("b")

        assert removed.id == "b"
        assert automation.index_of("b") == -1
        with pytest.raises(KeyError):
            automation.remove_step("b")

    def test_get_step_nested(self):
        """Test finding nested steps by id."""
        automation = Automation.from_yaml(NESTED_YAML)

        assert automation.get_step("tick").type == "delay"
        assert automation.get_step("nope") is None
        assert automation.steps[0].get_all_step_ids() == ["check", "lights", "quiet"]


class TestTrigger:
    """Test cases for Trigger."""

    def test_from_dict(self):
        """Test parsing a decoded trigger payload."""
        trigger = Trigger.from_dict(
            {"source": "nfc", "payload": {"automationId": "a1", "variables": {"room": "hall"}}}
        )

        assert trigger.source == TriggerSource.NFC
        assert trigger.automation_id == "a1"
        assert trigger.variables == {"room": "hall"}
        assert trigger.to_dict()["source"] == "nfc"

    def test_unknown_source(self):
        """Test that unknown sources are rejected."""
        with pytest.raises(InvalidAutomation):
            Trigger.from_dict({"source": "telepathy"})

    def test_manual(self):
        """Test the manual trigger helper."""
        trigger = Trigger.manual(x=1)

        assert trigger.source == TriggerSource.MANUAL
        assert trigger.variables == {"x": 1}
        assert trigger.automation_id is None
        assert Trigger.manual().payload == {}
