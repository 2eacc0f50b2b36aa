"""Tests for the session log."""
from __future__ import annotations

import json

import pytest

from tau_learning.memory import SessionLog, SessionLogConfig
from tau_learning.schemas import SessionRecord

from conftest import DAY_MS, make_context, make_outcome, now_ms


@pytest.fixture
def session_log(session_config):
    log = SessionLog(session_config)
    log.initialize()
    yield log
    log.close()


def write_session_file(directory, start_ms, records=()):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"session-{start_ms}.jsonl"
    with open(path, "w", encoding="utf-8") as f:
        for record in records:
            data = SessionRecord.from_outcome(record).model_dump(mode="json", by_alias=True)
            f.write(json.dumps(data) + "\n")
    return path


class TestAppend:
    """Tests for appending and reading records."""

    def test_round_trip_matches_projection(self, session_log):
        """Reading back an appended record yields its session projection."""
        outcome = make_outcome(
            success=False,
            error_msg="too far",
            reason="need wood",
            context=make_context(underground=True, time="night"),
        )
        assert session_log.append_entries([outcome]) == 1

        records = session_log.load_recent_entries(10)
        assert records == [SessionRecord.from_outcome(outcome)]
        assert records[0].result.msg == "too far"
        assert records[0].reason == "need wood"

    def test_round_trip_many_unbounded_age(self, tmp_path):
        """N appended records come back content-equal and in order."""
        log = SessionLog(SessionLogConfig(max_records_per_file=4, data_dir=tmp_path / "s"))
        log.initialize()
        outcomes = [make_outcome(target=f"t{i}", success=i % 3 != 0) for i in range(10)]
        log.append_entries(outcomes)
        records = log.load_recent_entries(10, float("inf"))
        log.close()
        assert records == [SessionRecord.from_outcome(o) for o in outcomes]

    def test_compact_wire_format(self, session_log):
        """Lines use the compact wire names."""
        session_log.append_entries([make_outcome(duration_ms=42)])
        line = session_log.current_file.read_text().splitlines()[0]
        data = json.loads(line)
        assert set(data) >= {"ts", "ctx", "act", "res"}
        assert data["res"] == {"ok": True, "msg": "Success", "ms": 42}
        assert data["ctx"]["pos"] == [10, 70, -5]

    def test_rotation_at_capacity(self, tmp_path):
        """A full file is closed and a new one opened."""
        log = SessionLog(SessionLogConfig(max_records_per_file=3, data_dir=tmp_path / "s"))
        log.initialize()
        log.append_entries([make_outcome(target=f"t{i}") for i in range(7)])
        files = log.list_session_files()
        log.close()

        assert [f.records for f in files] == [3, 3, 1]
        assert len({f.filename for f in files}) == 3

    def test_reopens_file_with_spare_capacity(self, session_config):
        """A restarted log keeps appending to the newest non-full file."""
        first = SessionLog(session_config)
        first.initialize()
        first.append_entries([make_outcome()])
        path = first.current_file
        first.close()

        second = SessionLog(session_config)
        second.initialize()
        second.append_entries([make_outcome()])
        assert second.current_file == path
        assert second.list_session_files()[-1].records == 2
        second.close()

    def test_corrupt_lines_skipped(self, session_log, session_config):
        """Unparseable and malformed lines are skipped."""
        session_log.append_entries([make_outcome(target="a")])
        with open(session_log.current_file, "a", encoding="utf-8") as f:
            f.write("{broken\n")
            f.write('{"ts": 1}\n')
        session_log.append_entries([make_outcome(target="b")])

        records = session_log.load_recent_entries(10)
        assert [r.action.target for r in records] == ["a", "b"]


class TestLoadRecent:
    """Tests for loading recent records."""

    def test_returns_newest_oldest_first(self, session_log):
        session_log.append_entries([make_outcome(target=f"t{i}") for i in range(5)])
        records = session_log.load_recent_entries(3)
        assert [r.action.target for r in records] == ["t2", "t3", "t4"]

    def test_spans_files(self, tmp_path):
        log = SessionLog(SessionLogConfig(max_records_per_file=2, data_dir=tmp_path / "s"))
        log.initialize()
        log.append_entries([make_outcome(target=f"t{i}") for i in range(5)])
        records = log.load_recent_entries(4)
        log.close()
        assert [r.action.target for r in records] == ["t1", "t2", "t3", "t4"]

    def test_age_cutoff_skips_old_files(self, session_config):
        """Files created before the age cutoff are not read."""
        old = now_ms() - 10 * DAY_MS
        write_session_file(session_config.data_dir, old, [make_outcome(target="old", ts=old)])
        # One record per file so the old file is full and never reopened
        log = SessionLog(
            SessionLogConfig(
                max_records_per_file=1, retention_days=30, data_dir=session_config.data_dir
            )
        )
        log.initialize()
        log.append_entries([make_outcome(target="new")])

        assert [r.action.target for r in log.load_recent_entries(10, 7)] == ["new"]
        assert [r.action.target for r in log.load_recent_entries(10, None)] == ["old", "new"]
        log.close()

    def test_zero_limit(self, session_log):
        session_log.append_entries([make_outcome()])
        assert session_log.load_recent_entries(0) == []


class TestRetention:
    """Tests for the retention policy."""

    def test_boundaries(self, session_config):
        """Files one day past retention go, files one day inside stay."""
        now = now_ms()
        expired = write_session_file(session_config.data_dir, now - 8 * DAY_MS, [make_outcome()])
        kept = write_session_file(session_config.data_dir, now - 6 * DAY_MS, [make_outcome()])

        log = SessionLog(session_config)
        assert log.enforce_retention_policy(now) == 1
        assert not expired.exists()
        assert kept.exists()

    def test_expire_callback_sees_files_first(self, session_config):
        """The expire callback receives files before they are deleted."""
        now = now_ms()
        expired = write_session_file(session_config.data_dir, now - 9 * DAY_MS, [make_outcome()])
        seen = []

        def on_expire(paths):
            seen.extend((p, p.exists()) for p in paths)

        log = SessionLog(session_config, expire_callback=on_expire)
        log.enforce_retention_policy(now)
        assert seen == [(expired, True)]
        assert not expired.exists()

    def test_files_the_callback_keeps_survive(self, session_config):
        """Files returned by the expire callback are not deleted."""
        now = now_ms()
        first = write_session_file(session_config.data_dir, now - 9 * DAY_MS, [make_outcome()])
        second = write_session_file(session_config.data_dir, now - 8 * DAY_MS, [make_outcome()])

        log = SessionLog(session_config, expire_callback=lambda paths: [second])
        assert log.enforce_retention_policy(now) == 1
        assert not first.exists()
        assert second.exists()

    def test_failing_callback_keeps_everything(self, session_config):
        now = now_ms()
        expired = write_session_file(session_config.data_dir, now - 9 * DAY_MS, [make_outcome()])

        def on_expire(paths):
            raise OSError("disk full")

        log = SessionLog(session_config, expire_callback=on_expire)
        assert log.enforce_retention_policy(now) == 0
        assert expired.exists()

    def test_initialize_applies_retention(self, session_config):
        old = write_session_file(
            session_config.data_dir, now_ms() - 30 * DAY_MS, [make_outcome()]
        )
        log = SessionLog(session_config)
        log.initialize()
        assert not old.exists()
        log.close()

    def test_current_file_never_expires(self, session_log):
        """The open file is kept even when it is past retention."""
        session_log.append_entries([make_outcome()])
        current = session_log.current_file
        assert session_log.enforce_retention_policy(now_ms() + 30 * DAY_MS) == 0
        assert current.exists()


class TestExport:
    """Tests for training export and stats."""

    def test_export_for_training(self, session_log, tmp_path):
        session_log.append_entries(
            [make_outcome(success=True), make_outcome(success=False, target="stone")]
        )
        output = tmp_path / "out" / "train.jsonl"
        assert session_log.export_for_training(output) == 2

        lines = [json.loads(line) for line in output.read_text().splitlines()]
        assert [line["reward"] for line in lines] == [1.0, 0.0]
        assert [m["role"] for m in lines[0]["messages"]] == ["system", "user", "assistant"]

    def test_export_only_successful_with_prompt(self, session_log, tmp_path):
        session_log.append_entries(
            [make_outcome(success=True), make_outcome(success=False)]
        )
        output = tmp_path / "train.jsonl"
        count = session_log.export_for_training(
            output, system_prompt="Be brief.", only_successful=True
        )
        assert count == 1
        record = json.loads(output.read_text())
        assert record["messages"][0]["content"] == "Be brief."

    def test_stats(self, session_log):
        session_log.append_entries([make_outcome(), make_outcome()])
        stats = session_log.get_stats()
        assert stats["total_files"] == 1
        assert stats["total_entries"] == 2
        assert stats["retention_days"] == 7
        assert stats["newest_file"] == session_log.current_file.name
