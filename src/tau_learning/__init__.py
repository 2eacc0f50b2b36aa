"""Tiered learning memory for an autonomous game agent."""
from .memory import LearningConfig, LearningSystem
from .schemas import ActionRef, CompactContext, OutcomeRecord, Pattern

__version__ = "0.1.0"

__all__ = [
    "LearningSystem",
    "LearningConfig",
    "ActionRef",
    "CompactContext",
    "OutcomeRecord",
    "Pattern",
]
