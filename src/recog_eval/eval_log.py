"""
Evaluation Log I/O

Append-only per-run logs, resume discovery, and the shared result-summary file.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

import filelock

from recog_eval.domain.constants import (
    DEFAULT_FLUSH_INTERVAL,
    DEFAULT_SUMMARY_LOCK_TIMEOUT_SECONDS,
    LOG_LINE_TIME_FORMAT,
    LOG_NAME_TIME_FORMAT,
)
from recog_eval.domain.entities import RunSummary
from recog_eval.domain.value_objects import is_error_result

logger = logging.getLogger(__name__)


def log_file_name(service_id: str, started_at: datetime) -> str:
    """Name of a new log file: <service_id>_<YYYYmmdd_HHMMSS>.log"""
    return f"{service_id}_{started_at.strftime(LOG_NAME_TIME_FORMAT)}.log"


def format_log_line(fields: list[str], finished_at: datetime) -> str:
    """Join record fields and a millisecond completion timestamp"""
    stamp = finished_at.strftime(LOG_LINE_TIME_FORMAT)[:-3]
    return "\t".join(fields) + "\t" + stamp


def _list_dir(log_dir: Path) -> Iterable[Path]:
    if not log_dir.exists():
        return []
    return log_dir.iterdir()


def find_latest_log(
    log_dir: str | Path,
    service_id: str,
    list_logs: Callable[[Path], Iterable[Path]] | None = None,
    mtime: Callable[[Path], float] | None = None,
) -> Path | None:
    """
    Find the most recently modified log of a service

    Only names of the exact form <service_id>_<YYYYmmdd_HHMMSS>.log match, so
    service "a" never picks up the logs of service "a_b".

    Args:
        log_dir: Evaluation-log directory
        service_id: Service identifier (log file prefix)
        list_logs: Directory lister (defaults to listing log_dir)
        mtime: Modification-time getter (defaults to os.path.getmtime)

    Returns:
        Path of the latest log, or None if the service has no log yet
    """
    list_logs = list_logs or _list_dir
    mtime = mtime or os.path.getmtime
    pattern = re.compile(rf"{re.escape(service_id)}_\d{{8}}_\d{{6}}\.log")
    candidates = [p for p in list_logs(Path(log_dir)) if pattern.fullmatch(p.name)]
    if not candidates:
        return None
    return max(candidates, key=mtime)


def scan_succeeded_keys(
    log_path: str | Path,
    key_index: int,
    result_index: int,
    expected_fields: int,
) -> set[str]:
    """
    Collect the keys already recognized successfully in a log

    Lines whose field count differs from expected_fields are dropped; they are
    the remains of a line cut short by an earlier crash.

    Args:
        log_path: Log file to scan
        key_index: Column of the correlation key
        result_index: Column holding the recognition result
        expected_fields: Dataset column count plus the timestamp column

    Returns:
        set[str]: Keys with a non-error result
    """
    log_path = Path(log_path)
    succeeded: set[str] = set()
    if not log_path.exists():
        return succeeded

    dropped = 0
    with open(log_path, "r", encoding="utf-8") as f:
        for line in f:
            cols = line.rstrip("\r\n").split("\t")
            if len(cols) != expected_fields:
                dropped += 1
                continue
            if not is_error_result(cols[result_index]):
                succeeded.add(cols[key_index])

    if dropped:
        logger.debug("Dropped %d malformed lines from %s", dropped, log_path)
    return succeeded


def _ends_with_newline(path: Path) -> bool:
    """True for a missing or empty file, or one whose last byte is a newline"""
    if not path.exists() or path.stat().st_size == 0:
        return True
    with open(path, "rb") as f:
        f.seek(-1, os.SEEK_END)
        return f.read(1) == b"\n"


class LogWriter:
    """Append-only log writer that flushes every flush_interval lines"""

    def __init__(self, log_path: str | Path, flush_interval: int = DEFAULT_FLUSH_INTERVAL):
        if flush_interval < 1:
            raise ValueError("flush_interval must be at least 1.")
        self.log_path = Path(log_path)
        self.flush_interval = flush_interval
        self.lines_written = 0
        self._file = None

    def __enter__(self) -> "LogWriter":
        needs_newline = not _ends_with_newline(self.log_path)
        self._file = open(self.log_path, "a", encoding="utf-8")
        if needs_newline:
            # Terminate a line cut short by a crash so it stays a single malformed line
            self._file.write("\n")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def write(self, line: str) -> None:
        """Write one complete line"""
        self._file.write(line + "\n")
        self.lines_written += 1
        if self.lines_written % self.flush_interval == 0:
            self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.flush()
            self._file.close()
            self._file = None


def append_summary(
    result_file: str | Path,
    summary: RunSummary,
    timeout_seconds: float = DEFAULT_SUMMARY_LOCK_TIMEOUT_SECONDS,
) -> bool:
    """
    Append a run summary to the shared result file under a file lock

    Args:
        result_file: Shared summary file
        summary: Summary to append
        timeout_seconds: Maximum wait for the writer lock

    Returns:
        bool: True if written, False if the lock could not be acquired in time
    """
    result_file = Path(result_file)
    result_file.parent.mkdir(parents=True, exist_ok=True)
    lock = filelock.FileLock(str(result_file) + ".lock", timeout=timeout_seconds)
    try:
        with lock:
            with open(result_file, "a", encoding="utf-8") as f:
                f.write(summary.to_line() + "\n")
    except filelock.Timeout:
        logger.error("Time out in getting write permission for eval result file: %s", result_file)
        return False
    return True
