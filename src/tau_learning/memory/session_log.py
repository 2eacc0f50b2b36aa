"""Append-only session log of outcome records.

Each session file holds at most ``max_records_per_file`` JSON lines and is
named after its creation time (``session-<ms>.jsonl``). Files older than the
retention window are deleted whole.
"""
from __future__ import annotations

import json
import logging
import math
import os
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, TextIO

from pydantic import ValidationError

from ..persistence import count_lines, model_to_line
from ..schemas import OutcomeRecord, SessionRecord
from .training import DEFAULT_SYSTEM_PROMPT, to_training_record

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
SESSION_FILE_RE = re.compile(r"^session-(\d+)\.jsonl$")

# Returns the files that must survive retention, or None to drop them all
ExpireCallback = Callable[[list[Path]], Optional[Iterable[Path]]]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionLogConfig:
    """Configuration for the session log."""

    max_records_per_file: int = 1000
    retention_days: float = 7
    data_dir: Path = field(default_factory=lambda: Path("data") / "learning" / "sessions")

    @classmethod
    def from_env(cls) -> "SessionLogConfig":
        return cls(
            max_records_per_file=int(
                os.environ.get("TAU_LEARNING_SESSION_FILE_CAPACITY", "1000")
            ),
            retention_days=float(os.environ.get("TAU_LEARNING_RETENTION_DAYS", "7")),
        )


@dataclass
class SessionFileInfo:
    filename: str
    path: Path
    start_time_ms: int
    records: int
    size_bytes: int


class SessionLog:
    """Durable, rotated, line-delimited JSON log of outcome records."""

    def __init__(
        self,
        config: Optional[SessionLogConfig] = None,
        expire_callback: Optional[ExpireCallback] = None,
    ):
        """Initialize the session log.

        Args:
            config: Session log configuration
            expire_callback: Receives the files a retention pass is about to delete
                and returns those to keep
        """
        self.config = config or SessionLogConfig.from_env()
        self.session_dir = self.config.data_dir
        self._expire_callback = expire_callback
        self._lock = threading.RLock()
        self._current_path: Optional[Path] = None
        self._current_count = 0
        self._handle: Optional[TextIO] = None

        self.session_dir.mkdir(parents=True, exist_ok=True)

    @property
    def current_file(self) -> Optional[Path]:
        return self._current_path

    def set_expire_callback(self, callback: Optional[ExpireCallback]) -> None:
        self._expire_callback = callback

    def initialize(self) -> None:
        """Apply retention, then reopen the newest file with spare capacity."""
        self.enforce_retention_policy()
        with self._lock:
            try:
                self._open_current_session()
            except OSError as e:
                logger.error(f"Failed to open session file: {e}")
        logger.info(
            f"Session log ready ({self._current_path}, {self._current_count} records)"
        )

    def append_entries(self, entries: Iterable[OutcomeRecord]) -> int:
        """Append outcome records, one compact line each.

        Returns:
            Number of records written
        """
        written = 0
        with self._lock:
            try:
                for entry in entries:
                    self._append_line(model_to_line(SessionRecord.from_outcome(entry)))
                    written += 1
                if self._handle is not None:
                    self._handle.flush()
            except OSError as e:
                logger.error(f"Failed to append to session log: {e}")
        if written:
            name = self._current_path.name if self._current_path else ""
            logger.debug(f"Appended {written} records to {name}")
        return written

    def _append_line(self, line: str) -> None:
        if self._current_count >= self.config.max_records_per_file:
            self._rotate_file()
        if self._handle is None:
            self._open_current_session()
        self._handle.write(line)
        self._current_count += 1

    def _new_file_path(self) -> Path:
        timestamp = _now_ms()
        path = self.session_dir / f"session-{timestamp}.jsonl"
        while path.exists() or path == self._current_path:
            timestamp += 1
            path = self.session_dir / f"session-{timestamp}.jsonl"
        return path

    def _close_handle(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            finally:
                self._handle = None

    def _open_current_session(self) -> None:
        self._close_handle()

        sessions = self.list_session_files()
        recent = sessions[-1] if sessions else None
        if recent is not None and recent.records < self.config.max_records_per_file:
            self._current_path = recent.path
            self._current_count = recent.records
        else:
            self._current_path = self._new_file_path()
            self._current_count = 0

        self._handle = open(self._current_path, "a", encoding="utf-8")
        logger.debug(
            f"Opened session file {self._current_path.name} "
            f"({self._current_count} existing records)"
        )

    def _rotate_file(self) -> None:
        old_name = self._current_path.name if self._current_path else ""
        logger.info(f"Rotating session file {old_name} ({self._current_count} records)")
        self._close_handle()
        self._current_path = self._new_file_path()
        self._current_count = 0
        self._handle = open(self._current_path, "a", encoding="utf-8")

    def list_session_files(self) -> list[SessionFileInfo]:
        """List session files, oldest first."""
        try:
            names = sorted(os.listdir(self.session_dir))
        except OSError as e:
            logger.error(f"Failed to list session files: {e}")
            return []

        sessions = []
        for name in names:
            match = SESSION_FILE_RE.match(name)
            if not match:
                continue
            path = self.session_dir / name
            try:
                size = path.stat().st_size
            except OSError:
                continue
            sessions.append(
                SessionFileInfo(
                    filename=name,
                    path=path,
                    start_time_ms=int(match.group(1)),
                    records=count_lines(path),
                    size_bytes=size,
                )
            )
        sessions.sort(key=lambda s: s.start_time_ms)
        return sessions

    def enforce_retention_policy(self, now_ms: Optional[int] = None) -> int:
        """Delete every session file created before the retention cutoff.

        The expire callback sees the files first and returns those it could
        not take over. Those files are kept, as are all of them when the
        callback raises.

        Returns:
            Number of files deleted
        """
        now = now_ms if now_ms is not None else _now_ms()
        cutoff = now - self.config.retention_days * DAY_MS
        with self._lock:
            expired = [
                s
                for s in self.list_session_files()
                if s.start_time_ms < cutoff and s.path != self._current_path
            ]
        if not expired:
            return 0

        if self._expire_callback is not None:
            try:
                kept = {Path(p) for p in self._expire_callback([s.path for s in expired]) or ()}
            except Exception:
                logger.exception("Expire callback failed, keeping expired session files")
                return 0
            if kept:
                logger.warning(f"Keeping {len(kept)} expired session files that were not archived")
                expired = [s for s in expired if s.path not in kept]

        deleted = 0
        for session in expired:
            if not session.path.exists():
                # Already moved out by the expire callback
                deleted += 1
                continue
            try:
                session.path.unlink()
            except OSError as e:
                logger.error(f"Failed to delete old session file {session.filename}: {e}")
                continue
            deleted += 1
            logger.info(
                f"Deleted old session file {session.filename} "
                f"({round((now - session.start_time_ms) / DAY_MS)} days)"
            )

        logger.info(f"Retention policy enforced, {deleted} files removed")
        return deleted

    def read_session_file(self, path: Path) -> list[SessionRecord]:
        """Read all records of one session file, skipping corrupt lines."""
        records = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                for lineno, line in enumerate(f, 1):
                    if not line.strip():
                        continue
                    try:
                        records.append(SessionRecord.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError):
                        logger.warning(f"Skipping corrupt line {lineno} in {path.name}")
        except OSError as e:
            logger.error(f"Failed to read session file {path}: {e}")
        return records

    def load_recent_entries(
        self,
        max_records: int = 500,
        max_age_days: Optional[float] = 7,
    ) -> list[SessionRecord]:
        """Load the newest records across session files.

        Args:
            max_records: Maximum records to return
            max_age_days: Skip files created before this many days ago (None for no limit)

        Returns:
            Up to ``max_records`` records, oldest first
        """
        if max_records <= 0:
            return []
        if max_age_days is None or math.isinf(max_age_days):
            cutoff = None
        else:
            cutoff = _now_ms() - max_age_days * DAY_MS

        with self._lock:
            if self._handle is not None:
                try:
                    self._handle.flush()
                except OSError as e:
                    logger.error(f"Failed to flush session file: {e}")
            sessions = self.list_session_files()

        records: list[SessionRecord] = []
        for session in reversed(sessions):
            if len(records) >= max_records:
                break
            if cutoff is not None and session.start_time_ms < cutoff:
                break
            records = self.read_session_file(session.path) + records

        return records[-max_records:]

    def export_for_training(
        self,
        output_path: Path,
        system_prompt: Optional[str] = None,
        only_successful: bool = False,
        max_entries: int = 10000,
    ) -> int:
        """Write recent records as training records to one JSON-lines file.

        Returns:
            Number of records written
        """
        prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        entries = self.load_recent_entries(max_entries, max_age_days=None)
        if only_successful:
            entries = [e for e in entries if e.success]

        count = 0
        try:
            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, "w", encoding="utf-8") as f:
                for entry in entries:
                    f.write(model_to_line(to_training_record(entry, prompt)))
                    count += 1
        except OSError as e:
            logger.error(f"Failed to export training dataset to {output_path}: {e}")
            return 0

        logger.info(f"Exported {count} training records to {output_path}")
        return count

    def get_stats(self) -> dict:
        sessions = self.list_session_files()
        return {
            "total_files": len(sessions),
            "total_entries": sum(s.records for s in sessions),
            "total_size_bytes": sum(s.size_bytes for s in sessions),
            "oldest_file": sessions[0].filename if sessions else None,
            "newest_file": sessions[-1].filename if sessions else None,
            "retention_days": self.config.retention_days,
        }

    def close(self) -> None:
        """Close the open session file."""
        with self._lock:
            try:
                self._close_handle()
            except OSError as e:
                logger.error(f"Failed to close session file: {e}")
            self._current_path = None
            self._current_count = 0
        logger.info("Session log closed")
