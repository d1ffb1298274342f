"""
Domain Value Objects

Defines immutable values describing recognition results and the
single error predicate shared by the engine and the accuracy calculator.
"""

import re
from dataclasses import dataclass, field

from recog_eval.domain.constants import SATURATION_MARKER, SYSTEM_ERROR

_LOG_BREAKS = re.compile(r"\s*[\t\r\n\v\f]+\s*")


def is_error_result(result: str) -> bool:
    """True if a logged result is a system error or a saturation reply"""
    return result.startswith(SYSTEM_ERROR) or SATURATION_MARKER in result


def clean_result(result: str) -> str:
    """Fold tabs and line breaks into spaces so a result fits in one log column"""
    return _LOG_BREAKS.sub(" ", result).strip()


def error_result(diagnostic: str) -> str:
    """Tag a diagnostic message with the system-error marker"""
    # Tabs and newlines would break the log's column layout
    cleaned = " ".join(diagnostic.split())
    return f"{SYSTEM_ERROR} {cleaned}".rstrip()


@dataclass(frozen=True)
class RankedLabel:
    """One entry of a ranked recognition result"""
    label: str
    confidence: float


@dataclass
class RecognitionCheck:
    """Correctness of one logged recognition result against its label"""
    key: str
    label: str
    result: str
    top1: bool
    top5: bool
    confidences: list[float] = field(default_factory=list)
    flag: int = 0

    @property
    def top1_confidence(self) -> float:
        return self.confidences[0] if self.confidences else float("-inf")
