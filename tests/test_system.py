"""Tests for the learning system coordinator."""
from __future__ import annotations

import json
import time
from dataclasses import replace
from pathlib import Path

import pytest

from tau_learning.memory import LearningConfig, LearningSystem
from tau_learning.memory.archive import month_of
from tau_learning.schemas import ActionRef, Pattern, PatternStats, SessionRecord

from conftest import DAY_MS, make_context, make_outcome, now_ms


@pytest.fixture
def system(learning_config):
    s = LearningSystem(learning_config)
    s.initialize(start_timers=False)
    yield s
    s.shutdown()


def record_many(system, count, action_type="mine", target="oak_log", success=True):
    for _ in range(count):
        system.record_action(
            ActionRef(type=action_type, target=target), make_context(), success, 250
        )


def write_old_session(system, age_days):
    """Write a one-record session file created ``age_days`` ago."""
    start = now_ms() - age_days * DAY_MS
    path = system.session_log.session_dir / f"session-{start}.jsonl"
    record = SessionRecord.from_outcome(make_outcome(ts=start))
    path.write_text(json.dumps(record.model_dump(mode="json", by_alias=True)) + "\n")
    return path, start


class TestLifecycle:
    """Tests for initialization and shutdown."""

    def test_layout(self, learning_config):
        system = LearningSystem(learning_config)
        root = learning_config.data_dir
        assert system.buffer.resume_file == root / "hot" / "session-current.json"
        assert system.session_log.session_dir == root / "sessions"
        assert system.distiller.patterns_file == root / "patterns.json"
        assert system.archive.archive_dir == root / "archive"

    def test_record_before_initialize_is_skipped(self, learning_config):
        system = LearningSystem(learning_config)
        entry = system.record_action({"type": "mine", "target": "x"}, make_context(), True, 1)
        assert entry is None
        assert len(system.buffer) == 0

    def test_double_initialize_is_harmless(self, system):
        system.initialize(start_timers=False)
        assert system.initialized

    def test_shutdown_persists_everything(self, learning_config):
        """After shutdown every record is in the session log and patterns are saved."""
        system = LearningSystem(learning_config)
        system.initialize(start_timers=False)
        record_many(system, 7)
        system.shutdown()

        assert not system.initialized
        entries = system.session_log.load_recent_entries(100)
        assert len(entries) == 7
        patterns = json.loads(system.distiller.patterns_file.read_text())
        assert [p["id"] for p in patterns["patterns"]] == ["mine:oak_log"]
        resume = json.loads(system.buffer.resume_file.read_text())
        assert len(resume["entries"]) == 5

    def test_restart_resumes_state(self, learning_config):
        first = LearningSystem(learning_config)
        first.initialize(start_timers=False)
        record_many(first, 7)
        first.shutdown()

        second = LearningSystem(learning_config)
        second.initialize(start_timers=False)
        assert len(second.get_recent_actions(10)) == 5
        assert second.distiller.get_pattern("mine:oak_log") is not None
        second.shutdown()
        # Resumed records are not written to the session log twice
        assert len(second.session_log.load_recent_entries(100)) == 7

    def test_timers_stop_on_shutdown(self, learning_config):
        system = LearningSystem(learning_config)
        system.initialize(start_timers=True)
        timer = system._distill_timer
        assert timer.running
        system.shutdown()
        assert not timer.running


class TestRecording:
    """Tests for recording and recall through the coordinator."""

    def test_overflow_reaches_session_log(self, system):
        record_many(system, 7)
        assert len(system.session_log.load_recent_entries(100)) == 2
        assert len(system.get_recent_actions(10)) == 5

    def test_accepts_plain_mappings(self, system):
        entry = system.record_action(
            {"type": "craft", "target": None},
            {"pos": [1, 2, 3], "hp": 12, "fd": 5, "inv": ["stick"], "time": "night"},
            False,
            90,
            reason="testing",
            error_msg="missing planks",
        )
        assert entry.action.signature == "craft:"
        assert entry.context.position == (1, 2, 3)
        assert entry.context.time == "night"

    def test_malformed_record_is_dropped(self, system):
        assert system.record_action({"target": "x"}, make_context(), True, 1) is None
        assert len(system.buffer) == 0

    def test_failure_queries(self, system):
        record_many(system, 3, action_type="craft", target="table", success=False)
        assert system.get_consecutive_failure_count() == 3
        assert system.get_most_recent_failing_action_type() == "craft"
        assert system.get_recently_failed_action_types(3) == ["craft"]
        assert system.is_repeating_failed_action().count == 3
        assert system.get_action_success_rate("craft") == 0.0

    def test_context_for_ai_joins_sections(self, system):
        record_many(system, 5)
        system.buffer.flush()
        assert system.extract_patterns() == 1

        text = system.build_context_for_ai(make_context())
        recent, learned = text.split("\n\n")
        assert recent.startswith("RECENT ACTIONS:")
        assert learned.startswith("LEARNED PATTERNS")
        assert system.get_relevant_patterns(make_context())[0].id == "mine:oak_log"
        assert system.get_top_patterns(1)[0].id == "mine:oak_log"

    def test_context_for_ai_empty(self, system):
        assert system.build_context_for_ai(make_context()) == ""

    def test_build_compact_context(self, system):
        ctx = system.build_compact_context({"position": {"x": 1, "y": 20, "z": 3}})
        assert ctx.underground is True


class TestMaintenance:
    """Tests for archiving, export and stats."""

    def test_expired_sessions_are_archived(self, learning_config):
        """Session files leaving retention end up in the archive."""
        start = now_ms() - 10 * DAY_MS
        sessions = learning_config.data_dir / "sessions"
        sessions.mkdir(parents=True)
        old = sessions / f"session-{start}.jsonl"
        record = SessionRecord.from_outcome(make_outcome(ts=start))
        old.write_text(json.dumps(record.model_dump(mode="json", by_alias=True)) + "\n")

        system = LearningSystem(learning_config)
        system.initialize(start_timers=False)

        assert not old.exists()
        archive_path = system.archive.archive_dir / f"training-{month_of(start)}.jsonl.gz"
        assert archive_path.exists()
        assert len(system.archive.read_archive(archive_path)) == 1
        system.shutdown()

    def test_maintenance_applies_retention(self, system):
        """Files passing the retention window while running are archived."""
        old, start = write_old_session(system, 8)
        system.run_maintenance()

        assert not old.exists()
        archive_path = system.archive.archive_dir / f"training-{month_of(start)}.jsonl.gz"
        assert len(system.archive.read_archive(archive_path)) == 1

    def test_maintenance_timer_applies_retention(self, learning_config):
        system = LearningSystem(replace(learning_config, distill_interval_s=0.05))
        system.initialize(start_timers=True)
        try:
            old, _ = write_old_session(system, 8)
            deadline = time.monotonic() + 5
            while old.exists() and time.monotonic() < deadline:
                time.sleep(0.02)
            assert not old.exists()
        finally:
            system.shutdown()

    def test_unarchivable_sessions_are_kept(self, system):
        """Expired files whose month cannot be archived stay on disk."""
        old, start = write_old_session(system, 8)
        corrupt = system.archive.archive_dir / f"training-{month_of(start)}.jsonl.gz"
        corrupt.write_bytes(b"not gzip at all")

        system.run_maintenance()
        assert old.exists()

    def test_idle_patterns_decay(self, system):
        """Extraction on an empty log still fades patterns not seen lately."""
        seen = now_ms() - 7 * DAY_MS
        system.distiller._patterns["mine:oak_log"] = Pattern(
            id="mine:oak_log",
            action=ActionRef(type="mine", target="oak_log"),
            stats=PatternStats(attempts=20, successes=18, first_seen=seen, last_seen=seen),
            confidence=0.8,
            decayed_score=0.8,
            reliability="high",
        )

        assert system.extract_patterns() == 0
        pattern = system.distiller.get_pattern("mine:oak_log")
        assert pattern.decayed_score == pytest.approx(0.4, rel=1e-3)

    def test_export_training_dataset(self, system, tmp_path):
        record_many(system, 3)
        system.buffer.flush()
        output = tmp_path / "export" / "dataset.jsonl"

        assert system.export_training_dataset(output) == 3
        assert (output.parent / "dataset-recent.jsonl").exists()
        assert (output.parent / "dataset-archive.jsonl").exists()

    def test_stats(self, system):
        record_many(system, 2)
        stats = system.get_stats()
        assert set(stats) == {"buffer", "session_log", "patterns", "archive"}
        assert stats["buffer"]["entries"] == 2
        assert stats["patterns"]["total_patterns"] == 0


class TestLearningConfig:
    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TAU_LEARNING_DATA_DIR", str(tmp_path / "elsewhere"))
        monkeypatch.setenv("TAU_LEARNING_DISTILL_INTERVAL_S", "60")
        monkeypatch.setenv("TAU_LEARNING_RETENTION_DAYS", "3")
        config = LearningConfig.from_env()
        assert config.data_dir == Path(tmp_path / "elsewhere")
        assert config.distill_interval_s == 60
        assert config.session_log.retention_days == 3
