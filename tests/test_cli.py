"""Tests for the maintenance command line."""
from __future__ import annotations

import json

import pytest

from tau_learning.cli import main
from tau_learning.memory import SessionLog, SessionLogConfig

from conftest import make_outcome


@pytest.fixture
def populated(data_dir):
    """Data directory with six successful mining records in the session log."""
    log = SessionLog(SessionLogConfig(data_dir=data_dir / "sessions"))
    log.initialize()
    log.append_entries([make_outcome() for _ in range(6)])
    log.close()
    return data_dir


def run(data_dir, *args):
    return main(["--data-dir", str(data_dir), *args])


class TestCli:
    """Tests for each subcommand."""

    def test_stats(self, populated, capsys):
        assert run(populated, "stats") == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["session_log"]["total_entries"] == 6
        assert stats["patterns"]["total_patterns"] == 0

    def test_distill(self, populated, capsys):
        assert run(populated, "distill") == 0
        assert "Patterns created or updated: 1" in capsys.readouterr().out
        saved = json.loads((populated / "patterns.json").read_text())
        assert saved["patterns"][0]["id"] == "mine:oak_log"

    def test_archive_nothing(self, populated, capsys):
        assert run(populated, "archive") == 0
        assert "Nothing to archive" in capsys.readouterr().out

    def test_export(self, populated, tmp_path, capsys):
        output = tmp_path / "ft.jsonl"
        assert run(populated, "export", str(output), "--max-entries", "4") == 0
        assert "Exported 4 training records" in capsys.readouterr().out
        assert len((tmp_path / "ft-recent.jsonl").read_text().splitlines()) == 4

    def test_clear_selected_tiers(self, populated, capsys):
        run(populated, "distill")
        assert run(populated, "clear", "--patterns", "--sessions") == 0
        out = capsys.readouterr().out
        assert "Cleared patterns" in out
        assert "Cleared 1 session files" in out
        assert not list((populated / "sessions").glob("session-*.jsonl"))
        assert json.loads((populated / "patterns.json").read_text())["patterns"] == []

    def test_clear_requires_selection(self, populated):
        assert run(populated, "clear") == 2

    def test_unknown_command(self, populated):
        with pytest.raises(SystemExit):
            run(populated, "bogus")
