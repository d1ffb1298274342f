"""
Domain Entities

Defines the primary data structures used in the evaluation process.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class EvaluationState(str, Enum):
    """Lifecycle of a single evaluation run"""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (EvaluationState.COMPLETED, EvaluationState.CANCELLED, EvaluationState.EXHAUSTED)


@dataclass
class RunSummary:
    """One line of the shared result-summary file"""
    service_id: str
    log_file: str
    start_time: datetime
    end_time: datetime
    retries_used: int
    attempts: int
    successes: int

    @property
    def throughput(self) -> float:
        """Attempts per second over the whole run"""
        elapsed = (self.end_time - self.start_time).total_seconds()
        if elapsed <= 0:
            return 0.0
        return self.attempts / elapsed

    def to_line(self) -> str:
        """Render as a tab-separated summary line (no trailing newline)"""
        return "\t".join([
            self.service_id,
            self.log_file,
            self.start_time.isoformat(),
            self.end_time.isoformat(),
            str(self.retries_used),
            str(self.attempts),
            str(self.successes),
            f"{self.throughput:.2f}",
        ])


@dataclass
class ProgressSnapshot:
    """Live counters of a running evaluation"""
    service_id: str
    processed: int
    succeeded: int
    total: int
    throughput: float
    state: EvaluationState

    def describe(self) -> str:
        return (
            f"{self.service_id}: progress: {self.processed} / {self.total}, "
            f"succeeded: {self.succeeded}, throughput: {self.throughput:.2f} images/sec"
        )
