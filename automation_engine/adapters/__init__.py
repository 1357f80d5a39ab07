"""Effect adapter implementations."""

from .http import HttpEffectAdapter
from .recording import EffectCall, RecordingEffectAdapter

__all__ = ["HttpEffectAdapter", "RecordingEffectAdapter", "EffectCall"]
