"""Maintenance commands for a learning data directory."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional, Sequence

from .memory.system import LearningConfig, LearningSystem

logger = logging.getLogger(__name__)


def cmd_stats(args, system: LearningSystem) -> int:
    print(json.dumps(system.get_stats(), indent=2))
    return 0


def cmd_distill(args, system: LearningSystem) -> int:
    system.distiller.initialize()
    count = system.extract_patterns()
    print(f"Patterns created or updated: {count}")
    return 0


def cmd_archive(args, system: LearningSystem) -> int:
    archives = system.create_monthly_archive()
    if not archives:
        print("Nothing to archive")
    for path in archives:
        print(path)
    return 0


def cmd_export(args, system: LearningSystem) -> int:
    count = system.export_training_dataset(
        args.output,
        only_successful=args.only_successful,
        system_prompt=args.system_prompt,
        max_entries=args.max_entries,
    )
    print(f"Exported {count} training records")
    return 0


def cmd_clear(args, system: LearningSystem) -> int:
    if not (args.patterns or args.sessions or args.hot):
        print("Nothing selected, pass --patterns, --sessions or --hot", file=sys.stderr)
        return 2

    if args.patterns:
        system.distiller.clear()
        print("Cleared patterns")
    if args.sessions:
        removed = 0
        for session in system.session_log.list_session_files():
            try:
                session.path.unlink()
            except OSError as e:
                logger.error(f"Failed to delete {session.filename}: {e}")
                continue
            removed += 1
        print(f"Cleared {removed} session files")
    if args.hot:
        system.buffer.clear()
        try:
            system.buffer.resume_file.unlink()
        except FileNotFoundError:
            pass
        print("Cleared short-term buffer")
    return 0


COMMANDS = {
    "stats": cmd_stats,
    "distill": cmd_distill,
    "archive": cmd_archive,
    "export": cmd_export,
    "clear": cmd_clear,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tau-learning",
        description="Inspect and maintain the agent's learning memory",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Learning data directory (default: $TAU_LEARNING_DATA_DIR or data/learning)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at debug level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("stats", help="Print statistics for every tier as JSON")
    subparsers.add_parser("distill", help="Run one pattern distillation cycle")
    subparsers.add_parser("archive", help="Archive session files from finished months")

    p_export = subparsers.add_parser("export", help="Export a training dataset")
    p_export.add_argument(
        "output", type=Path, help="Output path; -recent/-archive files are written beside it"
    )
    p_export.add_argument(
        "--only-successful", action="store_true", help="Keep successful actions only"
    )
    p_export.add_argument("--max-entries", type=int, default=None, help="Cap on records per source")
    p_export.add_argument("--system-prompt", default=None, help="Override the system message")

    p_clear = subparsers.add_parser("clear", help="Delete selected tiers (archives are kept)")
    p_clear.add_argument("--patterns", action="store_true", help="Delete distilled patterns")
    p_clear.add_argument("--sessions", action="store_true", help="Delete session log files")
    p_clear.add_argument("--hot", action="store_true", help="Delete the short-term resume file")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = LearningConfig.from_env()
    if args.data_dir is not None:
        config = replace(config, data_dir=args.data_dir)

    try:
        system = LearningSystem(config)
    except OSError as e:
        logger.error(f"Failed to open learning data at {config.data_dir}: {e}")
        return 1

    return COMMANDS[args.command](args, system)


if __name__ == "__main__":
    sys.exit(main())
