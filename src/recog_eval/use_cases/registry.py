"""
Evaluation Registry

Keeps at most one running evaluation per service id and reports live progress.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from recog_eval.domain.entities import ProgressSnapshot
from recog_eval.use_cases.evaluation import Evaluator

logger = logging.getLogger(__name__)


class EvaluationRegistry:
    """Thread-safe mapping from service id to its running Evaluator"""

    def __init__(self, evaluator_factory: Callable[[str], Evaluator]) -> None:
        self._factory = evaluator_factory
        self._evaluators: dict[str, Evaluator] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def start(self, service_id: str, concurrency: int, resume: bool = False) -> tuple[bool, Evaluator]:
        """
        Start (or resume) the evaluation of a service unless it is already running

        Args:
            service_id: Identifier of the recognition service
            concurrency: Number of recognition calls in parallel
            resume: Continue the latest log of the service

        Returns:
            (started, evaluator): started is False when an evaluation was already running
        """
        with self._lock:
            existing = self._evaluators.get(service_id)
            if existing is not None:
                return False, existing

            evaluator = self._factory(service_id)
            thread = threading.Thread(
                target=self._run,
                args=(service_id, evaluator, concurrency, resume),
                name=f"eval-{service_id}",
                daemon=True,
            )
            self._evaluators[service_id] = evaluator
            self._threads[service_id] = thread
            thread.start()

        return True, evaluator

    def _run(self, service_id: str, evaluator: Evaluator, concurrency: int, resume: bool) -> None:
        try:
            evaluator.run(concurrency, resume=resume)
        except Exception:
            logger.exception("Evaluation for %s failed", service_id)
        finally:
            with self._lock:
                if self._evaluators.get(service_id) is evaluator:
                    del self._evaluators[service_id]
                    del self._threads[service_id]

    def cancel(self, service_id: str) -> bool:
        """Signal cancellation; False if the service is not running"""
        with self._lock:
            evaluator = self._evaluators.get(service_id)
        if evaluator is None:
            return False
        evaluator.cancel()
        return True

    def check(self, service_id: str) -> ProgressSnapshot | None:
        """Live counters of a running evaluation, or None"""
        with self._lock:
            evaluator = self._evaluators.get(service_id)
        if evaluator is None:
            return None
        return evaluator.progress()

    def list(self) -> list[ProgressSnapshot]:
        """Live counters of every running evaluation"""
        with self._lock:
            evaluators = list(self._evaluators.values())
        return [e.progress() for e in evaluators]

    def is_running(self, service_id: str) -> bool:
        with self._lock:
            return service_id in self._evaluators

    def wait(self, service_id: str, timeout: float | None = None) -> bool:
        """
        Wait for the evaluation of a service to finish

        Returns:
            bool: True if no evaluation of the service is running anymore
        """
        with self._lock:
            thread = self._threads.get(service_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()
