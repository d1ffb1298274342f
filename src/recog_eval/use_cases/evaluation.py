"""
Evaluation Execution

Runs one service's evaluation over the dataset: concurrent recognition calls
with ordered logging, local and global retry, and resumption from the log.
"""

from __future__ import annotations

import base64
import binascii
import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, TypeVar

from recog_eval.dataset import column_count, count_records, read_records
from recog_eval.domain.entities import EvaluationState, ProgressSnapshot, RunSummary
from recog_eval.domain.value_objects import clean_result, error_result, is_error_result
from recog_eval.eval_log import (
    LogWriter,
    append_summary,
    find_latest_log,
    format_log_line,
    log_file_name,
    scan_succeeded_keys,
)
from recog_eval.eval_setting import EvaluationSetting
from recog_eval.harness_config import DispatchConfig, HarnessConfig
from recog_eval.infrastructure.recognition_clients.base import RecognitionClient

logger = logging.getLogger(__name__)

SECONDS_PER_MINUTE = 60.0

T = TypeVar("T")
R = TypeVar("R")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def backoff_minutes(global_retry: int, max_wait_mins: int) -> int:
    """
    Wait before a global retry pass

    Pass 0 runs immediately; pass n (n >= 1) waits 2 ** (n - 1) minutes,
    capped at max_wait_mins.
    """
    if global_retry <= 0:
        return 0
    return min(max_wait_mins, 2 ** (global_retry - 1))


def ordered_map(fn: Callable[[T], R], items: Iterable[T], concurrency: int) -> Iterator[R]:
    """
    Apply fn to items on a thread pool, yielding results in input order

    At most 2 * concurrency items are in flight, so items are consumed lazily.
    Closing the iterator waits for in-flight calls to return.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1.")

    window = 2 * concurrency
    with ThreadPoolExecutor(max_workers=concurrency) as executor:
        pending = deque()
        for item in items:
            pending.append(executor.submit(fn, item))
            if len(pending) >= window:
                yield pending.popleft().result()
        while pending:
            yield pending.popleft().result()


class Evaluator:
    """Evaluation run of one recognition service"""

    def __init__(
        self,
        service_id: str,
        setting: EvaluationSetting,
        client: RecognitionClient,
        dispatch: DispatchConfig | None = None,
        list_logs: Callable[[Path], Iterable[Path]] | None = None,
    ):
        """
        Args:
            service_id: Identifier of the recognition service under evaluation
            setting: Evaluation setting
            client: Recognition client for the service
            dispatch: Dispatch configuration (defaults if not specified)
            list_logs: Log directory lister used when resuming (optional)
        """
        self.service_id = service_id
        self.setting = setting
        self.client = client
        self.dispatch = dispatch or DispatchConfig()
        self.list_logs = list_logs
        if self.dispatch.max_local_retries < 1:
            raise ValueError("max_local_retries must be at least 1.")

        self.state = EvaluationState.IDLE
        self.total = 0
        self.processed = 0
        self.succeeded = 0
        self.retries_used = 0
        self.start_time: datetime | None = None
        self.log_path: Path | None = None

        self._cancel_event = threading.Event()

    # -- control --

    def cancel(self) -> None:
        """Request cooperative cancellation"""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def progress(self) -> ProgressSnapshot:
        """Snapshot of the live counters"""
        throughput = 0.0
        if self.start_time is not None:
            elapsed = (_utcnow() - self.start_time).total_seconds()
            if elapsed > 0:
                throughput = self.processed / elapsed
        return ProgressSnapshot(
            service_id=self.service_id,
            processed=self.processed,
            succeeded=self.succeeded,
            total=self.total,
            throughput=throughput,
            state=self.state,
        )

    # -- run --

    def run(self, concurrency: int, resume: bool = False) -> EvaluationState:
        """
        Evaluate the dataset against the service

        Args:
            concurrency: Number of recognition calls in parallel
            resume: Continue the latest log of this service instead of starting a new one

        Returns:
            EvaluationState: COMPLETED, CANCELLED or EXHAUSTED
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1.")
        if self.state is not EvaluationState.IDLE:
            raise RuntimeError(f"Evaluation for {self.service_id} has already been run.")

        self.state = EvaluationState.RUNNING
        self.start_time = _utcnow()
        self.setting.ensure_log_dir()
        self.log_path = self._select_log(resume)
        self.total = count_records(self.setting)
        expected_fields = column_count(self.setting.dataset_file) + 1

        logger.info(
            "Evaluating %s: %d records, log %s, concurrency %d",
            self.service_id, self.total, self.log_path.name, concurrency,
        )
        self.state = self._run_passes(concurrency, expected_fields)
        logger.info(
            "Evaluation for %s %s: %d / %d succeeded",
            self.service_id, self.state.value, self.succeeded, self.total,
        )
        self._write_summary()
        return self.state

    def _select_log(self, resume: bool) -> Path:
        if resume:
            latest = find_latest_log(self.setting.log_dir, self.service_id, list_logs=self.list_logs)
            if latest is not None:
                logger.info("Resuming from %s", latest)
                return latest
        return self.setting.log_dir / log_file_name(self.service_id, self.start_time)

    def _scan_succeeded(self, expected_fields: int) -> set[str]:
        succeeded_keys = scan_succeeded_keys(
            self.log_path,
            key_index=self.setting.key_index,
            result_index=self.setting.data_index,
            expected_fields=expected_fields,
        )
        self.succeeded = len(succeeded_keys)
        return succeeded_keys

    def _wait_for_retry(self, minutes: int) -> bool:
        """Back off before a retry pass. Returns True if cancelled meanwhile."""
        return self._cancel_event.wait(minutes * SECONDS_PER_MINUTE)

    def _run_passes(self, concurrency: int, expected_fields: int) -> EvaluationState:
        for global_retry in range(self.setting.max_retry):
            succeeded_keys = self._scan_succeeded(expected_fields)
            if self.succeeded >= self.total:
                return EvaluationState.COMPLETED

            if global_retry > 0:
                wait = backoff_minutes(global_retry, self.setting.max_wait_mins)
                logger.info(
                    "%s: %d / %d succeeded, retry %d in %d min",
                    self.service_id, self.succeeded, self.total, global_retry, wait,
                )
                if self._wait_for_retry(wait):
                    return EvaluationState.CANCELLED
            if self.cancelled:
                return EvaluationState.CANCELLED

            self.retries_used = global_retry
            self._dispatch(concurrency, succeeded_keys, expected_fields - 1)
            if self.cancelled:
                return EvaluationState.CANCELLED

        self._scan_succeeded(expected_fields)
        if self.succeeded >= self.total:
            return EvaluationState.COMPLETED
        return EvaluationState.EXHAUSTED

    def _pending_records(self, succeeded_keys: set[str], num_fields: int) -> Iterator[list[str]]:
        key_index = self.setting.key_index
        for fields in read_records(self.setting.dataset_file):
            if len(fields) != num_fields:
                logger.warning(
                    "Skipping record with %d fields (expected %d): %.80s",
                    len(fields), num_fields, fields[0],
                )
                continue
            if fields[key_index] in succeeded_keys:
                continue
            yield fields

    def _dispatch(self, concurrency: int, succeeded_keys: set[str], num_fields: int) -> None:
        """One pass over the records that have not succeeded yet"""
        records = self._pending_records(succeeded_keys, num_fields)
        data_index = self.setting.data_index
        with LogWriter(self.log_path, self.dispatch.flush_interval) as writer:
            with closing(ordered_map(self._process_record, records, concurrency)) as results:
                for fields in results:
                    if fields is None or self.cancelled:
                        logger.info("Cancel requested. Lines logged: %d", writer.lines_written)
                        break
                    writer.write(format_log_line(fields, _utcnow()))
                    # processed and succeeded count logged lines only
                    self.processed += 1
                    if not is_error_result(fields[data_index]):
                        self.succeeded += 1

    def _process_record(self, fields: list[str]) -> list[str] | None:
        """Recognize one record; None if cancellation cut it short"""
        if self.cancelled:
            return None

        key = fields[self.setting.key_index]
        try:
            payload = base64.b64decode(fields[self.setting.data_index], validate=True)
        except (binascii.Error, ValueError) as e:
            result = error_result(f"Invalid payload: {e}")
        else:
            result = self._call_with_retry(payload, key)
            if result is None:
                return None

        logged = list(fields)
        logged[self.setting.data_index] = clean_result(result)
        return logged

    def _call_with_retry(self, payload: bytes, key: str) -> str | None:
        result = ""
        for attempt in range(self.dispatch.max_local_retries):
            if self.cancelled:
                return None
            try:
                result = self.client.call(payload, key)
            except Exception as e:
                logger.warning("Recognition call for %s raised: %s", key, e)
                result = error_result(f"{type(e).__name__}: {e}")
            if not is_error_result(result):
                break
        return result

    def _write_summary(self) -> None:
        summary = RunSummary(
            service_id=self.service_id,
            log_file=self.log_path.name,
            start_time=self.start_time,
            end_time=_utcnow(),
            retries_used=self.retries_used,
            attempts=self.processed,
            successes=self.succeeded,
        )
        append_summary(
            self.setting.result_file,
            summary,
            timeout_seconds=self.dispatch.summary_lock_timeout_seconds,
        )


def make_evaluator_factory(
    setting: EvaluationSetting,
    config: HarnessConfig,
    create_client_fn: Callable[[str, HarnessConfig], RecognitionClient] | None = None,
) -> Callable[[str], Evaluator]:
    """
    Build the factory the registry uses to create evaluators

    Args:
        setting: Evaluation setting shared by all services
        config: HarnessConfig
        create_client_fn: Client factory (defaults to the HTTP client factory)

    Returns:
        Callable mapping a service id to a new Evaluator
    """
    if create_client_fn is None:
        from recog_eval.infrastructure.recognition_clients.factory import create_client
        create_client_fn = create_client

    def factory(service_id: str) -> Evaluator:
        return Evaluator(
            service_id,
            setting,
            create_client_fn(service_id, config),
            dispatch=config.dispatch,
        )

    return factory
