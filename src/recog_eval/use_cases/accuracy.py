"""
Offline Accuracy Calculation

Computes top-1/top-5 accuracy and precision/coverage curves from one or more
evaluation logs. Several logs of the same dataset are pooled by image key.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Union

import pandas as pd

from recog_eval.dataset import read_records
from recog_eval.domain.constants import FLAG, FLAG_SETS, LABEL
from recog_eval.domain.value_objects import RankedLabel, RecognitionCheck, is_error_result
from recog_eval.eval_setting import EvaluationSetting

TOP_K = 5

LogPaths = Union[str, Path, Iterable[Union[str, Path]]]


@dataclass
class LogStats:
    """Line counts of one or more log files"""
    total_lines: int
    valid_lines: int
    expected_columns: int


def _as_paths(log_paths: LogPaths) -> list[Path]:
    if isinstance(log_paths, (str, Path)):
        return [Path(log_paths)]
    return [Path(p) for p in log_paths]


def _read_rows(log_paths: LogPaths) -> list[list[str]]:
    rows = []
    for path in _as_paths(log_paths):
        with open(path, "r", encoding="utf-8") as f:
            rows.extend(line.rstrip("\r\n").split("\t") for line in f if line.strip())
    return rows


def read_log_frame(log_paths: LogPaths) -> pd.DataFrame:
    """
    Load logs into one DataFrame with positional integer columns

    Rows keep file order, and files are read in the order given. The expected
    column count is the most frequent one; lines with any other count are
    left over from an interrupted run and dropped.
    """
    rows = _read_rows(log_paths)
    if not rows:
        return pd.DataFrame()

    expected = Counter(len(r) for r in rows).most_common(1)[0][0]
    return pd.DataFrame([r for r in rows if len(r) == expected])


def log_stats(log_paths: LogPaths, result_index: int) -> LogStats:
    """Count raw lines and well-formed non-error lines of the logs"""
    total = len(_read_rows(log_paths))
    df = read_log_frame(log_paths)
    if df.empty:
        return LogStats(total_lines=total, valid_lines=0, expected_columns=0)
    valid = df[~df[result_index].map(is_error_result)]
    return LogStats(total_lines=total, valid_lines=len(valid), expected_columns=df.shape[1])


def parse_ranked_result(result: str, top_k: int = TOP_K) -> list[RankedLabel]:
    """
    Parse a ``label:confidence;label:confidence`` result

    Labels are lower-cased; an unparseable confidence becomes -inf and
    entries without a confidence are skipped.
    """
    ranked = []
    for entry in result.split(";"):
        label, sep, conf = entry.strip().rpartition(":")
        if not sep:
            continue
        try:
            confidence = float(conf.strip())
        except ValueError:
            confidence = float("-inf")
        ranked.append(RankedLabel(label=label.strip().lower(), confidence=confidence))
        if len(ranked) >= top_k:
            break
    return ranked


def _parse_flag(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        return 0


def check_results(setting: EvaluationSetting, log_paths: LogPaths) -> list[RecognitionCheck]:
    """
    Check each successfully recognized record of the logs against its label

    Only the first non-error result per key is used, across all logs.

    Args:
        setting: Evaluation setting (declares the label and optional flag columns)
        log_paths: One evaluation log or several logs to pool

    Returns:
        list[RecognitionCheck]: One check per distinct key
    """
    df = read_log_frame(log_paths)
    if df.empty:
        return []

    key_col = setting.key_index
    data_col = setting.data_index
    label_col = setting.column(LABEL)
    flag_col = setting.columns.get(FLAG)

    valid = df[~df[data_col].map(is_error_result)]
    valid = valid.drop_duplicates(subset=key_col, keep="first")

    checks = []
    for row in valid.itertuples(index=False):
        label = row[label_col].strip().lower()
        ranked = parse_ranked_result(row[data_col])
        names = [r.label for r in ranked]
        checks.append(RecognitionCheck(
            key=row[key_col],
            label=label,
            result=row[data_col],
            top1=bool(names) and names[0] == label,
            top5=label in names,
            confidences=[r.confidence for r in ranked],
            flag=_parse_flag(row[flag_col]) if flag_col is not None else 0,
        ))
    return checks


def top_k_accuracy(checks: list[RecognitionCheck]) -> dict:
    """
    Top-1 and top-5 accuracy over checks that carry a label

    Returns:
        dict: {"evaluated": int, "top1": float, "top5": float}
    """
    labeled = [c for c in checks if c.label]
    if not labeled:
        return {"evaluated": 0, "top1": 0.0, "top5": 0.0}
    return {
        "evaluated": len(labeled),
        "top1": sum(c.top1 for c in labeled) / len(labeled),
        "top5": sum(c.top5 for c in labeled) / len(labeled),
    }


def precision_coverage(checks: list[RecognitionCheck], total: int) -> pd.DataFrame:
    """
    Precision/coverage curve of top-1 answers ranked by confidence

    Args:
        checks: Checked results
        total: Ground-truth size used as the coverage denominator

    Returns:
        pd.DataFrame with columns label, result, check, conf, correct_count, precision, coverage
    """
    columns = ["label", "result", "check", "conf", "correct_count", "precision", "coverage"]
    if not checks or total <= 0:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame({
        "label": [c.label for c in checks],
        "result": [c.result for c in checks],
        "check": [c.top1 for c in checks],
        "conf": [c.top1_confidence for c in checks],
    })
    df = df.sort_values("conf", ascending=False, kind="mergesort").reset_index(drop=True)
    rank = pd.Series(range(1, len(df) + 1))
    df["correct_count"] = df["check"].astype(int).cumsum()
    df["precision"] = df["correct_count"] / rank
    df["coverage"] = rank / total
    return df[columns]


def coverage_at_precision(curve: pd.DataFrame, precision: float) -> tuple[float, float | None]:
    """
    Coverage reached while precision stays at or above a target

    Returns:
        (coverage, confidence threshold); (0.0, None) if the target is never met
    """
    if curve.empty:
        return 0.0, None
    hits = curve[curve["precision"] >= precision]
    if hits.empty:
        return 0.0, None
    last = hits.iloc[-1]
    return float(last["coverage"]), float(last["conf"])


def flag_set_totals(setting: EvaluationSetting) -> dict[str, int]:
    """Number of ground-truth records in each flag set of the dataset"""
    flag_col = setting.column(FLAG)
    totals = {name: 0 for name in FLAG_SETS}
    for fields in read_records(setting.dataset_file):
        flag = _parse_flag(fields[flag_col])
        for name, bit in FLAG_SETS.items():
            if flag & bit:
                totals[name] += 1
    return totals


def evaluate_flag_sets(setting: EvaluationSetting, checks: list[RecognitionCheck]) -> dict[str, dict]:
    """
    Precision/coverage per flag set (hard, random)

    Returns:
        dict: {set name: {"total": int, "tested": int, "curve": pd.DataFrame}}
    """
    totals = flag_set_totals(setting)
    report = {}
    for name, bit in FLAG_SETS.items():
        members = [c for c in checks if c.flag & bit]
        report[name] = {
            "total": totals[name],
            "tested": len(members),
            "curve": precision_coverage(members, totals[name]),
        }
    return report


def dump_flag_set_curves(report: dict[str, dict], log_path: str | Path) -> list[Path]:
    """
    Write each flag set's precision/coverage curve next to the log

    The n-th set in FLAG_SETS goes to ``<log stem>.set<n>.tsv`` (tab-separated,
    no header, columns as in precision_coverage).

    Returns:
        list[Path]: Written files
    """
    log_path = Path(log_path)
    written = []
    for n, name in enumerate(FLAG_SETS, start=1):
        out_path = log_path.with_suffix(f".set{n}.tsv")
        report[name]["curve"].to_csv(out_path, sep="\t", header=False, index=False)
        written.append(out_path)
    return written
