"""
Use Cases Layer

Aggregates business logic and provides use cases called from the runner.
"""

from recog_eval.use_cases.evaluation import (
    Evaluator,
    backoff_minutes,
    make_evaluator_factory,
    ordered_map,
)
from recog_eval.use_cases.registry import EvaluationRegistry
from recog_eval.use_cases.control import (
    INVALID_REQUEST,
    build_request,
    handle_request,
    parse_request,
)
from recog_eval.use_cases.accuracy import (
    check_results,
    coverage_at_precision,
    evaluate_flag_sets,
    dump_flag_set_curves,
    log_stats,
    precision_coverage,
    top_k_accuracy,
)

__all__ = [
    # evaluation
    "Evaluator",
    "backoff_minutes",
    "make_evaluator_factory",
    "ordered_map",
    # registry
    "EvaluationRegistry",
    # control
    "INVALID_REQUEST",
    "build_request",
    "handle_request",
    "parse_request",
    # accuracy
    "check_results",
    "coverage_at_precision",
    "evaluate_flag_sets",
    "dump_flag_set_curves",
    "log_stats",
    "precision_coverage",
    "top_k_accuracy",
]
