"""
Domain Layer

Defines constants, entities, and value objects that form the core of the business logic.
Has no dependencies on external libraries.
"""

from recog_eval.domain.constants import (
    IMAGE_DATA,
    IMAGE_KEY,
    REQUIRED_COLUMNS,
    SATURATION_MARKER,
    SYSTEM_ERROR,
)
from recog_eval.domain.entities import (
    EvaluationState,
    ProgressSnapshot,
    RunSummary,
)
from recog_eval.domain.value_objects import (
    RankedLabel,
    RecognitionCheck,
    clean_result,
    error_result,
    is_error_result,
)

__all__ = [
    # constants
    "IMAGE_DATA",
    "IMAGE_KEY",
    "REQUIRED_COLUMNS",
    "SATURATION_MARKER",
    "SYSTEM_ERROR",
    # entities
    "EvaluationState",
    "ProgressSnapshot",
    "RunSummary",
    # value objects
    "RankedLabel",
    "RecognitionCheck",
    "clean_result",
    "error_result",
    "is_error_result",
]
