"""Shared fixtures for automation engine tests."""

import random

import pytest

from automation_engine import Automation, AutomationEngine, EngineConfig
from automation_engine.adapters import RecordingEffectAdapter


@pytest.fixture
def effects():
    """Recording effect adapter; nothing leaves the process."""
    return RecordingEffectAdapter()


@pytest.fixture
def engine(effects):
    """Engine with the default registry, a recording adapter and a seeded rng."""
    return AutomationEngine(effects=effects, rng=random.Random(7))


@pytest.fixture
def make_engine(effects):
    """Factory for engines with setting overrides."""

    def _make(**settings):
        return AutomationEngine(
            effects=effects,
            config=EngineConfig(settings),
            rng=random.Random(7),
        )

    return _make


@pytest.fixture
def load():
    """Parse an automation from a YAML string."""
    return Automation.from_yaml
