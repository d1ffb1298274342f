"""
Dataset Reader

Streams tab-separated dataset records from a flat file.
"""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Iterator

from recog_eval.eval_setting import EvaluationSetting

logger = logging.getLogger(__name__)


def read_records(dataset_file: str | Path) -> Iterator[list[str]]:
    """
    Lazily read dataset records in file order

    Re-calling restarts from the beginning of the file.

    Args:
        dataset_file: Path to the tab-separated dataset

    Yields:
        list[str]: Fields of one record
    """
    with open(dataset_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\r\n")
            if not line:
                continue
            yield line.split("\t")


def column_count(dataset_file: str | Path) -> int:
    """Number of fields per record, taken from the first row (0 for an empty dataset)"""
    for fields in read_records(dataset_file):
        return len(fields)
    return 0


def count_records(setting: EvaluationSetting) -> int:
    """
    Total number of dataset records, memoized in the count cache

    The first call scans the dataset and writes the count next to it;
    later calls read the cached value. An empty or unreadable cache is
    treated as missing and rebuilt.

    Args:
        setting: Evaluation setting

    Returns:
        int: Number of records
    """
    count_file = setting.count_file
    if count_file.exists():
        cached = _read_count(count_file)
        if cached is not None:
            return cached
        logger.warning("Ignoring unreadable count cache %s", count_file)

    logger.info("Counting records in %s", setting.dataset_file)
    count = sum(1 for _ in read_records(setting.dataset_file))
    _write_count(count_file, count)
    return count


def _read_count(count_file: Path) -> int | None:
    tokens = count_file.read_text(encoding="utf-8").split()
    if not tokens:
        return None
    try:
        return int(tokens[0])
    except ValueError:
        return None


def _write_count(count_file: Path, count: int) -> None:
    """Replace the count cache atomically so a concurrent reader never sees a partial file"""
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=count_file.parent,
            prefix=f".{count_file.name}-",
            suffix=".tmp",
            delete=False,
        ) as f:
            tmp_path = f.name
            f.write(str(count))
        os.replace(tmp_path, count_file)
    except BaseException:
        if tmp_path is not None:
            with suppress(OSError):
                os.unlink(tmp_path)
        raise
