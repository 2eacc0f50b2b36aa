"""Coordinator that wires the learning tiers together.

Records flow from the short-term buffer into the session log, are distilled
into patterns on a timer, and end up in the cold archive once their month
is over or their session file expires.
"""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from pydantic import ValidationError

from ..schemas import ActionRef, CompactContext, OutcomeRecord, Pattern
from .archive import ColdArchive
from .buffer import BufferConfig, RepeatedFailure, ShortTermBuffer
from .context import build_compact_context
from .patterns import DistillerConfig, PatternDistiller
from .scheduler import PeriodicTask
from .session_log import SessionLog, SessionLogConfig

logger = logging.getLogger(__name__)

RECENT_DISTILL_RECORDS = 500
RECENT_DISTILL_DAYS = 7


@dataclass
class LearningConfig:
    """Settings for every tier, rooted at one data directory."""

    data_dir: Path = field(default_factory=lambda: Path("data") / "learning")
    distill_interval_s: float = 300.0
    buffer: BufferConfig = field(default_factory=BufferConfig)
    session_log: SessionLogConfig = field(default_factory=SessionLogConfig)
    distiller: DistillerConfig = field(default_factory=DistillerConfig)

    @classmethod
    def from_env(cls) -> "LearningConfig":
        return cls(
            data_dir=Path(os.environ.get("TAU_LEARNING_DATA_DIR", "data/learning")),
            distill_interval_s=float(os.environ.get("TAU_LEARNING_DISTILL_INTERVAL_S", "300")),
            buffer=BufferConfig.from_env(),
            session_log=SessionLogConfig.from_env(),
            distiller=DistillerConfig.from_env(),
        )


class LearningSystem:
    """Single entry point for recording outcomes and recalling what was learned.

    Example:
        system = LearningSystem(LearningConfig(data_dir=Path("data/learning")))
        system.initialize()
        ctx = system.build_compact_context(game_state)
        system.record_action({"type": "mine", "target": "oak_log"}, ctx, True, 1200)
        prompt_text = system.build_context_for_ai(ctx)
        system.shutdown()
    """

    def __init__(self, config: Optional[LearningConfig] = None):
        self.config = config or LearningConfig.from_env()
        data_dir = Path(self.config.data_dir)

        self.session_log = SessionLog(
            replace(self.config.session_log, data_dir=data_dir / "sessions")
        )
        self.archive = ColdArchive(self.session_log, data_dir / "archive")
        # Expiring session files go to the archive before retention deletes them
        self.session_log.set_expire_callback(self.archive.archive_expired_sessions)

        self.buffer = ShortTermBuffer(
            replace(self.config.buffer, data_dir=data_dir / "hot"),
            overflow_callback=self.session_log.append_entries,
        )
        self.distiller = PatternDistiller(self.config.distiller, data_dir / "patterns.json")

        self._initialized = False
        self._distill_timer: Optional[PeriodicTask] = None
        self._lock = threading.Lock()
        logger.info(f"Learning system created at {data_dir}")

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, start_timers: bool = True) -> None:
        """Load persisted state, run a first distillation and start the timers."""
        with self._lock:
            if self._initialized:
                logger.warning("Learning system already initialized")
                return

            self.session_log.initialize()
            self.buffer.initialize(start_timer=start_timers)
            self.distiller.initialize()
            self.extract_patterns()

            if start_timers:
                self._distill_timer = PeriodicTask(
                    "learning-maintenance", self.config.distill_interval_s, self.run_maintenance
                )
                self._distill_timer.start()

            self._initialized = True
        logger.info("Learning system initialized")

    def record_action(
        self,
        action: Union[ActionRef, Mapping[str, Any]],
        context: Union[CompactContext, Mapping[str, Any]],
        success: bool,
        duration_ms: int,
        reason: Optional[str] = None,
        error_msg: Optional[str] = None,
    ) -> Optional[OutcomeRecord]:
        """Record the outcome of one action.

        Returns:
            The stored record, or None when the system is not initialized or
            the action/context is malformed
        """
        if not self._initialized:
            logger.warning("Learning system not initialized, skipping record")
            return None
        try:
            action_ref = ActionRef.model_validate(action)
            ctx = CompactContext.model_validate(context)
        except ValidationError as e:
            logger.warning(f"Dropping malformed action record: {e}")
            return None
        return self.buffer.record(action_ref, ctx, success, duration_ms, reason, error_msg)

    @staticmethod
    def build_compact_context(metadata: Mapping[str, Any]) -> CompactContext:
        return build_compact_context(metadata)

    def build_context_for_ai(self, context: CompactContext) -> str:
        """Recent activity followed by the patterns relevant to ``context``."""
        parts = [self.buffer.build_context_for_ai(), self.distiller.build_context_for_ai(context)]
        return "\n\n".join(part for part in parts if part)

    # Short-term buffer

    def get_recent_actions(self, limit: int = 10) -> list[OutcomeRecord]:
        return self.buffer.get_recent(limit)

    def get_consecutive_failure_count(self) -> int:
        return self.buffer.get_consecutive_failure_count()

    def get_recently_failed_action_types(self, min_failures: int = 3) -> list[str]:
        return self.buffer.get_recently_failed_action_types(min_failures)

    def get_most_recent_failing_action_type(self) -> Optional[str]:
        return self.buffer.get_most_recent_failing_action_type()

    def is_repeating_failed_action(self) -> Optional[RepeatedFailure]:
        return self.buffer.is_repeating_failed_action()

    def get_stuck_loop_warning(self) -> Optional[str]:
        return self.buffer.get_stuck_loop_warning()

    def get_action_success_rate(self, action_type: str) -> float:
        return self.buffer.get_action_success_rate(action_type)

    # Patterns

    def get_relevant_patterns(self, context: CompactContext, limit: int = 10) -> list[Pattern]:
        return self.distiller.get_relevant_patterns(context, limit)

    def get_top_patterns(self, limit: int = 20) -> list[Pattern]:
        return self.distiller.get_top_patterns(limit)

    def get_high_confidence_patterns(self, min_confidence: float = 0.6) -> list[Pattern]:
        return self.distiller.get_high_confidence_patterns(min_confidence)

    def extract_patterns(self) -> int:
        """Distill the recent session log into patterns.

        Returns:
            Number of patterns created or updated
        """
        try:
            entries = self.session_log.load_recent_entries(
                RECENT_DISTILL_RECORDS, RECENT_DISTILL_DAYS
            )
            # Runs on an empty log too so idle patterns still decay
            return self.distiller.distill(entries)
        except Exception:
            logger.exception("Pattern extraction failed")
            return 0

    def run_maintenance(self) -> int:
        """One periodic cycle: session retention, then pattern distillation.

        Returns:
            Number of patterns created or updated
        """
        try:
            self.session_log.enforce_retention_policy()
        except Exception:
            logger.exception("Session retention failed")
        return self.extract_patterns()

    # Archive

    def create_monthly_archive(self) -> list[Path]:
        return self.archive.create_monthly_archive()

    def export_training_dataset(
        self,
        output_path: Union[str, Path],
        only_successful: bool = False,
        system_prompt: Optional[str] = None,
        max_entries: Optional[int] = None,
    ) -> int:
        """Export recent and archived records as training data.

        Writes ``<stem>-recent.jsonl`` from the session log and
        ``<stem>-archive.jsonl`` from the archive, beside ``output_path``.

        Returns:
            Total number of records written
        """
        output_path = Path(output_path)
        recent_path = output_path.with_name(f"{output_path.stem}-recent.jsonl")
        archive_path = output_path.with_name(f"{output_path.stem}-archive.jsonl")

        recent_count = self.session_log.export_for_training(
            recent_path,
            system_prompt=system_prompt,
            only_successful=only_successful,
            max_entries=max_entries if max_entries is not None else 10000,
        )
        archive_count = self.archive.export_combined_dataset(
            archive_path,
            only_successful=only_successful,
            system_prompt=system_prompt,
            max_entries=max_entries,
        )
        logger.info(
            f"Training dataset exported: {recent_count} recent, {archive_count} archived"
        )
        return recent_count + archive_count

    def get_stats(self) -> dict:
        return {
            "buffer": self.buffer.get_stats(),
            "session_log": self.session_log.get_stats(),
            "patterns": self.distiller.get_stats(),
            "archive": self.archive.get_stats(),
        }

    def shutdown(self) -> None:
        """Persist everything held in memory and run one archive pass."""
        with self._lock:
            if not self._initialized:
                logger.debug("Learning system not initialized, nothing to shut down")
                return

            if self._distill_timer is not None:
                self._distill_timer.stop()
                self._distill_timer = None

            self.buffer.shutdown()
            self.extract_patterns()
            self.session_log.close()
            self.distiller.save_patterns()
            self.create_monthly_archive()

            self._initialized = False
        logger.info("Learning system shut down")
