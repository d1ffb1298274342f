"""
recog-eval-harness CLI Runner

Minimal CLI for running an evaluation and computing accuracy from its log.

Usage:
    python -m recog_eval.runner run --config eval.cfg --service-id 0a1b2c3d --concurrency 4
    python -m recog_eval.runner accuracy --config eval.cfg --log eval_log/0a1b2c3d_20260101_120000.log

Resume an interrupted run (continues the latest log of the service):
    python -m recog_eval.runner run --config eval.cfg --service-id 0a1b2c3d --resume

Pool several logs of the same dataset and write per-set curves next to the first one:
    python -m recog_eval.runner accuracy --config eval.cfg --log a.log b.log --dump

`run` exits with 1 when the evaluation ends without completing (retries exhausted
or the run failed); a cancelled run exits with 0.
"""

from __future__ import annotations

import argparse
import logging
import sys

from dotenv import load_dotenv

from recog_eval.domain.constants import FLAG, PRECISION_TARGETS
from recog_eval.domain.entities import EvaluationState
from recog_eval.eval_setting import ConfigError, EvaluationSetting, load_setting
from recog_eval.harness_config import HarnessConfig, load_config
from recog_eval.use_cases.accuracy import (
    check_results,
    coverage_at_precision,
    dump_flag_set_curves,
    evaluate_flag_sets,
    log_stats,
    top_k_accuracy,
)
from recog_eval.use_cases.control import build_request, handle_request
from recog_eval.use_cases.evaluation import Evaluator, make_evaluator_factory
from recog_eval.use_cases.registry import EvaluationRegistry

PROGRESS_INTERVAL_SECONDS = 5.0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="recog-eval-harness: Evaluate a remote recognition service",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run an evaluation in the foreground")
    run_parser.add_argument("--config", required=True, help="Path to the evaluation config file")
    run_parser.add_argument("--service-id", required=True, help="Identifier of the recognition service")
    run_parser.add_argument(
        "--concurrency",
        type=int,
        default=1,
        help="Number of recognition calls in parallel (default: 1)",
    )
    run_parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue the latest log of the service instead of starting a new one",
    )

    acc_parser = subparsers.add_parser("accuracy", help="Compute accuracy from evaluation logs")
    acc_parser.add_argument("--config", required=True, help="Path to the evaluation config file")
    acc_parser.add_argument(
        "--log",
        required=True,
        nargs="+",
        help="Evaluation log file(s); several logs are pooled by image key",
    )
    acc_parser.add_argument(
        "--dump",
        action="store_true",
        help="Write per-set precision/coverage curves to <log>.set1.tsv and <log>.set2.tsv",
    )
    return parser.parse_args(argv)


def _setup_logging(config: HarnessConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def run_evaluation(args: argparse.Namespace, setting: EvaluationSetting, config: HarnessConfig) -> int:
    """
    Start an evaluation through the control surface and follow it until it ends

    Returns:
        int: 0 if the run completed or was cancelled, 1 otherwise
    """
    evaluators: dict[str, Evaluator] = {}
    create_evaluator = make_evaluator_factory(setting, config)

    def factory(service_id: str) -> Evaluator:
        evaluators[service_id] = create_evaluator(service_id)
        return evaluators[service_id]

    registry = EvaluationRegistry(factory)
    max_concurrency = config.dispatch.max_concurrency
    cmd = "Resume" if args.resume else "Start"

    print(f"\n=== Evaluating service: {args.service_id} ===\n")
    if setting.service_name:
        print(f"  Task: {setting.service_name}")
    print(f"  Dataset: {setting.dataset_file}")
    print(f"  Log dir: {setting.log_dir}")
    print(f"  Max retry: {setting.max_retry}")
    print()
    print(handle_request(registry, build_request(cmd, args.service_id, args.concurrency), max_concurrency))

    check = build_request("Check", args.service_id)
    try:
        while not registry.wait(args.service_id, timeout=PROGRESS_INTERVAL_SECONDS):
            print(f"  {handle_request(registry, check, max_concurrency)}")
    except KeyboardInterrupt:
        print(handle_request(registry, build_request("Cancel", args.service_id), max_concurrency))
        registry.wait(args.service_id)

    evaluator = evaluators.get(args.service_id)
    state = evaluator.state if evaluator is not None else None

    print(f"\n=== Output ===\n")
    if evaluator is not None:
        print(f"  State: {state.value}")
        print(f"  Succeeded: {evaluator.succeeded} / {evaluator.total}")
        if evaluator.log_path is not None:
            print(f"  Log: {evaluator.log_path}")
    print(f"  Summary: {setting.result_file}")
    print()
    if state in (EvaluationState.COMPLETED, EvaluationState.CANCELLED):
        return 0
    return 1


def report_accuracy(args: argparse.Namespace, setting: EvaluationSetting) -> int:
    """Print accuracy figures for one log, or for several logs pooled by key"""
    logs = args.log
    stats = log_stats(logs, setting.data_index)
    checks = check_results(setting, logs)
    acc = top_k_accuracy(checks)

    print(f"\n=== Accuracy: {', '.join(logs)} ===\n")
    if setting.service_name:
        print(f"  Task: {setting.service_name}")
    print(f"  Total raw lines:   {stats.total_lines}")
    print(f"  Valid lines:       {stats.valid_lines}")
    print(f"  Valid columns:     {stats.expected_columns}")
    print(f"  Distinct results:  {len(checks)}")
    print(f"  Evaluated:         {acc['evaluated']}")
    print(f"  Top-1 accuracy:    {acc['top1']:.4f}")
    print(f"  Top-5 accuracy:    {acc['top5']:.4f}")
    print()

    if setting.has_column(FLAG):
        report = evaluate_flag_sets(setting, checks)
        for name, entry in report.items():
            print(f"  --- Set '{name}': tested {entry['tested']} / {entry['total']} ---")
            for target in PRECISION_TARGETS:
                coverage, conf = coverage_at_precision(entry["curve"], target)
                conf_text = f"{conf:.4f}" if conf is not None else "###"
                print(f"  Prec = {target}, Coverage = {coverage:.4f}, Conf = {conf_text}")
            print()
        if args.dump:
            for path in dump_flag_set_curves(report, logs[0]):
                print(f"  Curve: {path}")
            print()
    elif args.dump:
        print("  No 'flag' column declared; nothing to dump.")
        print()
    return 0


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    config = load_config()
    _setup_logging(config)

    try:
        setting = load_setting(args.config)
    except (ConfigError, FileNotFoundError) as e:
        print(f"ERROR: {e}")
        return 1

    if args.command == "run":
        return run_evaluation(args, setting, config)
    return report_accuracy(args, setting)


if __name__ == "__main__":
    sys.exit(main())
