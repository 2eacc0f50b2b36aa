"""Short-term outcome buffer with overflow delivery and session resume."""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from ..persistence import write_json_atomic
from ..schemas import ActionRef, CompactContext, OutcomeRecord
from .scheduler import PeriodicTask

logger = logging.getLogger(__name__)

RESUME_FILE_VERSION = 1
RESUME_WINDOW_MS = 60 * 60 * 1000
MAX_REASON_CHARS = 100
MAX_ERROR_CHARS = 200
STUCK_WINDOW = 5
STUCK_THRESHOLD = 3

OverflowCallback = Callable[[list[OutcomeRecord]], object]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BufferConfig:
    """Configuration for the short-term buffer."""

    capacity: int = 50
    flush_interval_s: float = 30.0
    data_dir: Path = field(default_factory=lambda: Path("data") / "learning" / "hot")

    @classmethod
    def from_env(cls) -> "BufferConfig":
        return cls(
            capacity=int(os.environ.get("TAU_LEARNING_BUFFER_SIZE", "50")),
            flush_interval_s=float(os.environ.get("TAU_LEARNING_FLUSH_INTERVAL_S", "30")),
        )


@dataclass
class ActionStats:
    """Aggregated buffer statistics for one action type."""

    type: str
    attempts: int
    successes: int
    failures: int
    success_rate: float
    avg_duration_ms: float
    last_attempt: int
    last_success: Optional[int]
    recent_errors: list[str]


@dataclass
class RepeatedFailure:
    action: ActionRef
    count: int


class ShortTermBuffer:
    """Thread-safe bounded buffer of recent outcome records.

    Records beyond capacity are handed to the overflow callback before they
    are dropped. A background timer flushes unflushed records to the same
    callback and saves the buffer to a resume file.
    """

    def __init__(
        self,
        config: Optional[BufferConfig] = None,
        overflow_callback: Optional[OverflowCallback] = None,
    ):
        """Initialize the buffer.

        Args:
            config: Buffer configuration
            overflow_callback: Receives records leaving the buffer, oldest first
        """
        self.config = config or BufferConfig.from_env()
        self._callback = overflow_callback
        self._entries: list[OutcomeRecord] = []
        # Number of records at the head of _entries already delivered
        self._flushed = 0
        self._lock = threading.RLock()
        self._session_id = f"session-{_now_ms()}"
        self._session_start = _now_ms()
        self._timer: Optional[PeriodicTask] = None

        self.config.data_dir.mkdir(parents=True, exist_ok=True)
        self.resume_file = self.config.data_dir / "session-current.json"

    @property
    def session_id(self) -> str:
        return self._session_id

    def set_overflow_callback(self, callback: Optional[OverflowCallback]) -> None:
        self._callback = callback

    def initialize(self, start_timer: bool = True) -> None:
        """Load the resume file and start the flush/save timer."""
        self._load_resume_file()
        if start_timer:
            self._timer = PeriodicTask(
                "buffer-flush", self.config.flush_interval_s, self._on_timer
            )
            self._timer.start()
        logger.info(f"Short-term buffer ready ({len(self)} records loaded)")

    def _on_timer(self) -> None:
        self.flush()
        self.save_resume_file()

    def record(
        self,
        action: ActionRef,
        context: CompactContext,
        success: bool,
        duration_ms: int,
        reason: Optional[str] = None,
        error_msg: Optional[str] = None,
    ) -> OutcomeRecord:
        """Append an outcome record.

        Args:
            action: Action attempted
            context: World state when the decision was made
            success: Whether the action succeeded
            duration_ms: How long the action took
            reason: Decision rationale, truncated to 100 characters
            error_msg: Failure message, truncated to 200 characters

        Returns:
            The stored record
        """
        entry = OutcomeRecord(
            timestamp_ms=_now_ms(),
            action=action,
            context=context,
            success=success,
            duration_ms=int(duration_ms),
            reason=reason[:MAX_REASON_CHARS] if reason else None,
            error_msg=error_msg[:MAX_ERROR_CHARS] if error_msg else None,
        )

        overflow: list[OutcomeRecord] = []
        with self._lock:
            self._entries.append(entry)
            excess = len(self._entries) - self.config.capacity
            if excess > 0:
                overflow = self._entries[self._flushed:excess]
                del self._entries[:excess]
                self._flushed = max(0, self._flushed - excess)

        if overflow:
            self._deliver(overflow)

        logger.debug(
            f"Recorded {entry.signature} success={success} "
            f"duration={duration_ms}ms total={len(self)}"
        )
        return entry

    def _deliver(self, entries: list[OutcomeRecord]) -> bool:
        if self._callback is None:
            return False
        try:
            self._callback(entries)
        except Exception:
            logger.exception(f"Overflow callback failed for {len(entries)} records")
            return False
        return True

    def flush(self) -> int:
        """Hand every not-yet-delivered record to the overflow callback.

        Returns:
            Number of records delivered
        """
        if self._callback is None:
            return 0
        with self._lock:
            pending = self._entries[self._flushed:]
            if not pending:
                return 0
            self._flushed = len(self._entries)
        if not self._deliver(pending):
            return 0
        logger.debug(f"Flushed {len(pending)} records")
        return len(pending)

    def get_recent(self, limit: int = 10) -> list[OutcomeRecord]:
        """Most recent records, newest first."""
        if limit <= 0:
            return []
        with self._lock:
            return list(reversed(self._entries[-limit:]))

    def get_by_action_type(self, action_type: str, limit: int = 10) -> list[OutcomeRecord]:
        if limit <= 0:
            return []
        with self._lock:
            matching = [e for e in self._entries if e.action.type == action_type]
        return list(reversed(matching[-limit:]))

    def get_recent_failures(self, action_type: str, limit: int = 5) -> list[OutcomeRecord]:
        if limit <= 0:
            return []
        with self._lock:
            matching = [
                e for e in self._entries if e.action.type == action_type and not e.success
            ]
        return list(reversed(matching[-limit:]))

    def get_consecutive_failure_count(self) -> int:
        count = 0
        with self._lock:
            for entry in reversed(self._entries):
                if entry.success:
                    break
                count += 1
        return count

    def get_most_recent_failing_action_type(self) -> Optional[str]:
        with self._lock:
            for entry in reversed(self._entries):
                if not entry.success:
                    return entry.action.type
        return None

    def get_recently_failed_action_types(self, min_failures: int = 3) -> list[str]:
        with self._lock:
            counts = Counter(e.action.type for e in self._entries if not e.success)
        return [action_type for action_type, n in counts.items() if n >= min_failures]

    def is_repeating_failed_action(self) -> Optional[RepeatedFailure]:
        """Detect the same action and target failing three times in a row."""
        with self._lock:
            last_three = self._entries[-3:]
        if len(last_three) < 3:
            return None
        if any(e.success for e in last_three):
            return None
        first = last_three[0].action
        if all(e.action == first for e in last_three):
            return RepeatedFailure(action=first, count=3)
        return None

    def get_action_success_rate(self, action_type: str) -> float:
        with self._lock:
            actions = [e for e in self._entries if e.action.type == action_type]
        if not actions:
            return 0.0
        return sum(1 for e in actions if e.success) / len(actions)

    def get_action_stats(self, action_type: str) -> Optional[ActionStats]:
        with self._lock:
            actions = [e for e in self._entries if e.action.type == action_type]
        if not actions:
            return None

        successes = [e for e in actions if e.success]
        failures = [e for e in actions if not e.success]
        return ActionStats(
            type=action_type,
            attempts=len(actions),
            successes=len(successes),
            failures=len(failures),
            success_rate=len(successes) / len(actions),
            avg_duration_ms=sum(e.duration_ms for e in actions) / len(actions),
            last_attempt=actions[-1].timestamp_ms,
            last_success=successes[-1].timestamp_ms if successes else None,
            recent_errors=[e.error_msg or "Unknown error" for e in failures[-3:]],
        )

    def get_all_action_stats(self) -> list[ActionStats]:
        with self._lock:
            action_types = list(dict.fromkeys(e.action.type for e in self._entries))
        stats = [self.get_action_stats(t) for t in action_types]
        return sorted((s for s in stats if s is not None), key=lambda s: s.attempts, reverse=True)

    def get_stuck_loop_warning(self) -> Optional[str]:
        """Warn when one signature dominates the failures in the last five records."""
        with self._lock:
            if len(self._entries) < STUCK_WINDOW:
                return None
            last_five = self._entries[-STUCK_WINDOW:]

        failed = [e for e in last_five if not e.success]
        if len(failed) < STUCK_THRESHOLD:
            return None

        counts = Counter((e.action.type, e.action.target or "none") for e in failed)
        (action_type, target), count = counts.most_common(1)[0]
        if count < STUCK_THRESHOLD:
            return None

        logger.warning(f"Stuck loop: {action_type} {target} failed {count} times")
        return (
            f'STUCK LOOP: "{action_type} {target}" failed {count} times! '
            "Try something COMPLETELY DIFFERENT."
        )

    def build_context_for_ai(self) -> str:
        recent = self.get_recent(5)
        if not recent:
            return ""

        now = _now_ms()
        lines = ["RECENT ACTIONS:"]
        for entry in recent:
            status = "✓" if entry.success else "✗"
            age_s = round((now - entry.timestamp_ms) / 1000)
            lines.append(
                f"  {status} {entry.action.type} {entry.action.target} "
                f"({age_s}s ago, {entry.duration_ms}ms)"
            )
            if not entry.success and entry.error_msg:
                lines.append(f"    Error: {entry.error_msg[:50]}")

        failed_types = self.get_recently_failed_action_types(2)
        if failed_types:
            lines.append("")
            lines.append("ACTION SUCCESS RATES:")
            for action_type in failed_types:
                stats = self.get_action_stats(action_type)
                if stats:
                    lines.append(
                        f"  {action_type}: {round(stats.success_rate * 100)}% "
                        f"({stats.successes}/{stats.attempts})"
                    )

        warning = self.get_stuck_loop_warning()
        if warning:
            lines = ["", warning] + lines

        return "\n".join(lines)

    def _load_resume_file(self) -> None:
        if not self.resume_file.exists():
            logger.debug("No resume file found, starting fresh")
            return

        try:
            with open(self.resume_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load resume file: {e}")
            return

        if not isinstance(data, dict) or data.get("version") != RESUME_FILE_VERSION:
            logger.warning("Resume file version mismatch, starting fresh")
            return

        cutoff = _now_ms() - RESUME_WINDOW_MS
        entries: list[OutcomeRecord] = []
        for raw in data.get("entries") or []:
            try:
                entry = OutcomeRecord.model_validate(raw)
            except ValidationError:
                logger.warning("Skipping malformed entry in resume file")
                continue
            if entry.timestamp_ms > cutoff:
                entries.append(entry)

        with self._lock:
            self._entries = entries[-self.config.capacity:]
            # Saved records were flushed before the save
            self._flushed = len(self._entries)
            last_flush = data.get("lastFlush") or 0
            if isinstance(last_flush, (int, float)) and last_flush > cutoff:
                self._session_id = str(data.get("sessionId") or self._session_id)
                self._session_start = int(data.get("startTime") or self._session_start)

        logger.info(
            f"Loaded {len(self._entries)} of {len(data.get('entries') or [])} "
            f"records from resume file"
        )

    def save_resume_file(self) -> bool:
        """Atomically persist the whole buffer to the resume file."""
        with self._lock:
            payload = {
                "version": RESUME_FILE_VERSION,
                "sessionId": self._session_id,
                "startTime": self._session_start,
                "lastFlush": _now_ms(),
                "entries": [
                    e.model_dump(mode="json", by_alias=True, exclude_none=True)
                    for e in self._entries
                ],
            }
        try:
            write_json_atomic(self.resume_file, payload)
        except OSError as e:
            logger.error(f"Failed to save resume file: {e}")
            return False
        logger.debug(f"Saved resume file ({len(payload['entries'])} records)")
        return True

    def shutdown(self) -> None:
        """Stop the timer, flush everything and save the resume file."""
        if self._timer is not None:
            self._timer.stop()
            self._timer = None
        self.flush()
        self.save_resume_file()
        logger.info(
            f"Short-term buffer shut down ({len(self)} records, "
            f"session {round((_now_ms() - self._session_start) / 60000)} minutes)"
        )

    def get_stats(self) -> dict:
        now = _now_ms()
        with self._lock:
            oldest = self._entries[0].timestamp_ms if self._entries else None
            newest = self._entries[-1].timestamp_ms if self._entries else None
            return {
                "entries": len(self._entries),
                "max_entries": self.config.capacity,
                "session_id": self._session_id,
                "session_duration_ms": now - self._session_start,
                "oldest_entry_age_ms": now - oldest if oldest is not None else None,
                "newest_entry_age_ms": now - newest if newest is not None else None,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> None:
        """Clear the buffer."""
        with self._lock:
            self._entries.clear()
            self._flushed = 0
        logger.info("Short-term buffer cleared")
