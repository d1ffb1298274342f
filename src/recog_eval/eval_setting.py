"""
Evaluation Setting

Loads the per-dataset evaluation config file (``key: value`` lines, ``#`` comments).

Example::

    service_name: Celeb@MM16
    testfile: measurement_set.tsv
    columns: imagekey, label, flag, imagedata
    eval_log_dir: eval_log
    max_retry: 10
    max_wait_mins: 60
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from recog_eval.domain.constants import (
    DEFAULT_MAX_RETRY,
    DEFAULT_MAX_WAIT_MINS,
    IMAGE_DATA,
    IMAGE_KEY,
    REQUIRED_COLUMNS,
)

_COLUMN_SEPARATORS = re.compile(r"[ ;,]")


class ConfigError(ValueError):
    """Missing or invalid evaluation configuration"""
    pass


@dataclass(frozen=True)
class EvaluationSetting:
    """Resolved, immutable evaluation settings"""
    dataset_file: Path
    log_dir: Path
    result_file: Path
    columns: dict[str, int] = field(default_factory=dict)
    max_retry: int = DEFAULT_MAX_RETRY
    max_wait_mins: int = DEFAULT_MAX_WAIT_MINS
    service_name: str = ""

    def __post_init__(self):
        for name in REQUIRED_COLUMNS:
            if name not in self.columns:
                raise ConfigError(f"Required column '{name}' is missing from columns: {list(self.columns)}")

    @property
    def count_file(self) -> Path:
        """Count cache stored next to the dataset (e.g. set.tsv -> set.count.tsv)"""
        return self.dataset_file.with_name(f"{self.dataset_file.stem}.count{self.dataset_file.suffix}")

    @property
    def key_index(self) -> int:
        return self.columns[IMAGE_KEY]

    @property
    def data_index(self) -> int:
        return self.columns[IMAGE_DATA]

    def column(self, name: str) -> int:
        """Physical index of a logical column"""
        try:
            return self.columns[name]
        except KeyError:
            raise ConfigError(f"Column '{name}' is not declared in columns: {list(self.columns)}") from None

    def has_column(self, name: str) -> bool:
        return name in self.columns

    def ensure_log_dir(self) -> Path:
        """Create the evaluation-log directory if missing"""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        return self.log_dir


def parse_columns(value: str) -> dict[str, int]:
    """
    Split a columns declaration into an ordered name -> index mapping.

    Separators may be mixed and repeated: ``"imagekey, label;imagedata"``
    maps to imagekey=0, label=1, imagedata=2.

    Raises:
        ConfigError: If a column name is declared twice
    """
    names = [token for token in _COLUMN_SEPARATORS.split(value) if token]
    columns: dict[str, int] = {}
    for idx, name in enumerate(names):
        if name in columns:
            raise ConfigError(f"Column '{name}' is declared twice: {value}")
        columns[name] = idx
    return columns


def parse_config_lines(lines) -> dict[str, str]:
    """Parse ``key: value`` lines into a dict with lower-cased keys"""
    entries: dict[str, str] = {}
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition(":")
        if not sep:
            raise ConfigError(f"Malformed config line (expected 'key: value'): {stripped}")
        entries[key.strip().lower()] = value.strip()
    return entries


def _int_entry(entries: dict[str, str], key: str, default: int) -> int:
    raw = entries.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"The value '{raw}' of '{key}' is not an integer.") from None
    if value < 0:
        raise ConfigError(f"'{key}' must be non-negative, got {value}.")
    return value


def load_setting(config_path: str | Path) -> EvaluationSetting:
    """
    Load an evaluation config file

    Paths in the file are resolved relative to the config file's directory.

    Args:
        config_path: Path to the config file

    Returns:
        EvaluationSetting

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If a required key or column is missing or a value is invalid
    """
    config_path = Path(config_path)
    with open(config_path, "r", encoding="utf-8") as f:
        entries = parse_config_lines(f)

    for key in ("testfile", "columns"):
        if not entries.get(key):
            raise ConfigError(f"Required key '{key}' is missing: {config_path}")

    base_dir = config_path.parent
    return EvaluationSetting(
        dataset_file=base_dir / entries["testfile"],
        log_dir=base_dir / entries.get("eval_log_dir", "eval_log"),
        result_file=base_dir / entries.get("result_file", "measurement_result.tsv"),
        columns=parse_columns(entries["columns"]),
        max_retry=_int_entry(entries, "max_retry", DEFAULT_MAX_RETRY),
        max_wait_mins=_int_entry(entries, "max_wait_mins", DEFAULT_MAX_WAIT_MINS),
        service_name=entries.get("service_name", ""),
    )
