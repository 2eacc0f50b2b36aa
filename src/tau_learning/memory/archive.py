"""Cold archive of session records, one gzip file per calendar month.

Archive files hold training records (see :mod:`.training`) and are never
deleted automatically. Appending to an existing month decompresses the
archive, appends the new records and compresses it again.
"""
from __future__ import annotations

import gzip
import json
import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from ..persistence import count_lines, model_to_line
from ..schemas import TrainingRecord
from .session_log import SESSION_FILE_RE, SessionLog
from .training import to_training_record

logger = logging.getLogger(__name__)

ARCHIVE_FILE_RE = re.compile(r"^training-(\d{4}-\d{2})\.jsonl(\.gz)?$")
# Rough size of one compressed training record
ESTIMATED_BYTES_PER_RECORD = 200
COMPRESSION_LEVEL = 9

ARCHIVE_ERRORS = (OSError, EOFError, gzip.BadGzipFile)


def month_of(timestamp_ms: int) -> str:
    """Local calendar month (``YYYY-MM``) of a millisecond timestamp."""
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m")


def _with_system_prompt(record: TrainingRecord, prompt: str) -> TrainingRecord:
    if not record.messages or record.messages[0].role != "system":
        return record
    messages = list(record.messages)
    messages[0] = messages[0].model_copy(update={"content": prompt})
    return record.model_copy(update={"messages": messages})


def _shift_month(month: str, delta: int) -> str:
    year, mon = (int(part) for part in month.split("-"))
    index = year * 12 + (mon - 1) + delta
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


@dataclass
class ArchiveInfo:
    filename: str
    path: Path
    month: str
    entries: int
    size_bytes: int
    compressed: bool
    created_at_ms: int


class ColdArchive:
    """Permanent monthly storage of session log records.

    Features:
    - Moves session files from finished months into ``training-YYYY-MM.jsonl.gz``
    - Appends to an existing month without losing earlier records
    - Exports every archived record into one training dataset
    """

    def __init__(self, session_log: SessionLog, archive_dir: Optional[Path] = None):
        """Initialize the archive.

        Args:
            session_log: Source of session files
            archive_dir: Directory holding the monthly archive files
        """
        self.session_log = session_log
        self.archive_dir = archive_dir or Path("data") / "learning" / "archive"
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def create_monthly_archive(self, now: Optional[datetime] = None) -> list[Path]:
        """Archive every session file created before the current month.

        Args:
            now: Reference time (defaults to now)

        Returns:
            Archive files created or appended to
        """
        current_month = (now or datetime.now()).strftime("%Y-%m")
        to_archive = [
            s.path
            for s in self.session_log.list_session_files()
            if month_of(s.start_time_ms) < current_month
        ]
        if not to_archive:
            logger.debug("No sessions to archive")
            return []
        return self.archive_session_files(to_archive)

    def archive_session_files(self, paths: Iterable[Path]) -> list[Path]:
        """Archive an explicit list of session files, grouped by month.

        Source files are deleted once their month is archived. The session
        file currently open for writing is skipped.

        Returns:
            Archive files created or appended to
        """
        created, _ = self._archive_by_month(paths)
        return created

    def archive_expired_sessions(self, paths: Iterable[Path]) -> list[Path]:
        """Archive session files leaving retention.

        Returns:
            The files that could not be archived and must be kept
        """
        _, unarchived = self._archive_by_month(paths)
        if unarchived:
            logger.warning(f"{len(unarchived)} expired session files could not be archived")
        return unarchived

    def _archive_by_month(self, paths: Iterable[Path]) -> tuple[list[Path], list[Path]]:
        current = self.session_log.current_file
        by_month: dict[str, list[Path]] = {}
        unarchived: list[Path] = []
        for path in paths:
            path = Path(path)
            match = SESSION_FILE_RE.match(path.name)
            if not match:
                logger.warning(f"Not a session file, skipping: {path.name}")
                unarchived.append(path)
                continue
            if current is not None and path == current:
                unarchived.append(path)
                continue
            by_month.setdefault(month_of(int(match.group(1))), []).append(path)

        created: list[Path] = []
        processed = 0
        for month in sorted(by_month):
            session_paths = by_month[month]
            archive_path = self._archive_month(month, session_paths)
            if archive_path is None:
                unarchived.extend(session_paths)
                continue
            created.append(archive_path)
            processed += len(session_paths)
            for session_path in session_paths:
                try:
                    session_path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.error(f"Failed to delete archived session file {session_path}: {e}")
                else:
                    logger.debug(f"Deleted archived session file {session_path.name}")

        if created:
            logger.info(
                f"Monthly archive complete: {len(created)} months, {processed} session files"
            )
        return created, unarchived

    def _archive_month(self, month: str, session_paths: list[Path]) -> Optional[Path]:
        plain = self.archive_dir / f"training-{month}.jsonl"
        compressed = self.archive_dir / f"training-{month}.jsonl.gz"

        try:
            if compressed.exists():
                logger.info(f"Archive for {month} already exists, appending")
                count = self._append_to_compressed(compressed, session_paths)
            else:
                with open(plain, "w", encoding="utf-8") as f:
                    count = self._write_records(f, session_paths)
                self._compress(plain, compressed)
                plain.unlink()
        except ARCHIVE_ERRORS as e:
            logger.error(f"Failed to archive {month}: {e}")
            return None

        logger.info(f"Archived {count} records into {compressed.name}")
        return compressed

    def _append_to_compressed(self, compressed: Path, session_paths: list[Path]) -> int:
        temp = compressed.with_suffix(".tmp")
        try:
            with gzip.open(compressed, "rb") as src, open(temp, "wb") as dst:
                shutil.copyfileobj(src, dst)
            with open(temp, "a", encoding="utf-8") as f:
                count = self._write_records(f, session_paths)
            self._compress(temp, compressed)
        finally:
            if temp.exists():
                temp.unlink()
        return count

    def _write_records(self, f, session_paths: list[Path]) -> int:
        count = 0
        for session_path in session_paths:
            for entry in self.session_log.read_session_file(session_path):
                f.write(model_to_line(to_training_record(entry)))
                count += 1
        return count

    @staticmethod
    def _compress(source: Path, target: Path) -> None:
        # Compress beside the target so a failure leaves the old archive intact
        staging = target.with_name(target.name + ".part")
        with open(source, "rb") as src, gzip.open(
            staging, "wb", compresslevel=COMPRESSION_LEVEL
        ) as dst:
            shutil.copyfileobj(src, dst)
        os.replace(staging, target)

    def list_archives(self) -> list[ArchiveInfo]:
        """List archive files by month.

        Entry counts of compressed archives are estimated from their size.
        """
        try:
            names = sorted(os.listdir(self.archive_dir))
        except OSError as e:
            logger.error(f"Failed to list archives: {e}")
            return []

        archives = []
        for name in names:
            match = ARCHIVE_FILE_RE.match(name)
            if not match:
                continue
            path = self.archive_dir / name
            try:
                stat = path.stat()
            except OSError:
                continue
            compressed = match.group(2) is not None
            if compressed:
                entries = round(stat.st_size / ESTIMATED_BYTES_PER_RECORD)
            else:
                entries = count_lines(path)
            archives.append(
                ArchiveInfo(
                    filename=name,
                    path=path,
                    month=match.group(1),
                    entries=entries,
                    size_bytes=stat.st_size,
                    compressed=compressed,
                    created_at_ms=int(stat.st_mtime * 1000),
                )
            )
        return archives

    def read_archive(self, path: Path) -> list[TrainingRecord]:
        """Read every training record from a plaintext or gzip archive."""
        path = Path(path)
        records = []
        try:
            if path.name.endswith(".gz"):
                f = gzip.open(path, "rt", encoding="utf-8")
            else:
                f = open(path, "r", encoding="utf-8")
            with f:
                for line in f:
                    if not line.strip():
                        continue
                    try:
                        records.append(TrainingRecord.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError):
                        logger.warning(f"Skipping corrupt line in {path.name}")
        except ARCHIVE_ERRORS as e:
            logger.error(f"Failed to read archive {path}: {e}")
        return records

    def export_combined_dataset(
        self,
        output_path: Path,
        only_successful: bool = False,
        system_prompt: Optional[str] = None,
        max_entries: Optional[int] = None,
    ) -> int:
        """Write the records of every archive into one JSON-lines file.

        Args:
            output_path: Destination file
            only_successful: Keep only successful records
            system_prompt: Replaces the stored system message when given
            max_entries: Stop after this many records (None for no limit)

        Returns:
            Number of records written
        """
        archives = self.list_archives()
        total = 0
        try:
            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, "w", encoding="utf-8") as out:
                for archive in archives:
                    if max_entries is not None and total >= max_entries:
                        break
                    for record in self.read_archive(archive.path):
                        if max_entries is not None and total >= max_entries:
                            break
                        if only_successful and not record.success:
                            continue
                        if system_prompt:
                            record = _with_system_prompt(record, system_prompt)
                        out.write(model_to_line(record))
                        total += 1
        except OSError as e:
            logger.error(f"Failed to export combined dataset to {output_path}: {e}")
            return 0

        logger.info(
            f"Exported {total} archived records from {len(archives)} archives to {output_path}"
        )
        return total

    def get_stats(self) -> dict:
        archives = self.list_archives()
        return {
            "total_archives": len(archives),
            "total_entries": sum(a.entries for a in archives),
            "total_size_bytes": sum(a.size_bytes for a in archives),
            "oldest_month": archives[0].month if archives else None,
            "newest_month": archives[-1].month if archives else None,
            "compressed_count": sum(1 for a in archives if a.compressed),
            "uncompressed_count": sum(1 for a in archives if not a.compressed),
        }

    def delete_old_archives(self, keep_months: int, now: Optional[datetime] = None) -> int:
        """Delete archives of months older than ``keep_months`` before the current one.

        Returns:
            Number of archive files deleted
        """
        current_month = (now or datetime.now()).strftime("%Y-%m")
        cutoff = _shift_month(current_month, -keep_months)

        deleted = 0
        for archive in self.list_archives():
            if archive.month >= cutoff:
                continue
            try:
                archive.path.unlink()
            except OSError as e:
                logger.error(f"Failed to delete archive {archive.filename}: {e}")
                continue
            deleted += 1
            logger.info(f"Deleted old archive {archive.filename}")
        return deleted
