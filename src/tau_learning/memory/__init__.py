"""Tiered learning memory for the agent."""
from .buffer import (
    ShortTermBuffer,
    BufferConfig,
    ActionStats,
    RepeatedFailure,
)
from .session_log import (
    SessionLog,
    SessionLogConfig,
    SessionFileInfo,
)
from .patterns import (
    PatternDistiller,
    DistillerConfig,
    wilson_lower_bound,
    decayed_score,
    classify_reliability,
    extract_trigger,
    trigger_match_score,
)
from .archive import (
    ColdArchive,
    ArchiveInfo,
)
from .training import (
    DEFAULT_SYSTEM_PROMPT,
    render_context,
    to_training_record,
)
from .context import build_compact_context
from .scheduler import PeriodicTask
from .system import (
    LearningSystem,
    LearningConfig,
)

__all__ = [
    # Buffer
    "ShortTermBuffer",
    "BufferConfig",
    "ActionStats",
    "RepeatedFailure",
    # Session log
    "SessionLog",
    "SessionLogConfig",
    "SessionFileInfo",
    # Patterns
    "PatternDistiller",
    "DistillerConfig",
    "wilson_lower_bound",
    "decayed_score",
    "classify_reliability",
    "extract_trigger",
    "trigger_match_score",
    # Archive
    "ColdArchive",
    "ArchiveInfo",
    # Training records
    "DEFAULT_SYSTEM_PROMPT",
    "render_context",
    "to_training_record",
    # Coordinator
    "build_compact_context",
    "PeriodicTask",
    "LearningSystem",
    "LearningConfig",
]
