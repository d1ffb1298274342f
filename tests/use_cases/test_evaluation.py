"""
Tests for the evaluation engine (use_cases/evaluation.py)

Covers ordered dispatch, local and global retry, resumption from the log,
cooperative cancellation, and the run summary.
"""

import base64
import threading
import time
from unittest.mock import patch

import pytest

from recog_eval.domain.entities import EvaluationState
from recog_eval.eval_setting import EvaluationSetting
from recog_eval.harness_config import DispatchConfig, HarnessConfig
from recog_eval.infrastructure.recognition_clients.base import RecognitionClient
from recog_eval.use_cases.evaluation import (
    Evaluator,
    backoff_minutes,
    make_evaluator_factory,
    ordered_map,
)


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _make_setting(tmp_path, keys, max_retry=1, max_wait_mins=60, data=None):
    data = data or {}
    dataset = tmp_path / "set.tsv"
    dataset.write_text(
        "".join(f"{key}\tcat\t{data.get(key, _b64(key))}\n" for key in keys),
        encoding="utf-8",
    )
    return EvaluationSetting(
        dataset_file=dataset,
        log_dir=tmp_path / "eval_log",
        result_file=tmp_path / "result.tsv",
        columns={"imagekey": 0, "label": 1, "imagedata": 2},
        max_retry=max_retry,
        max_wait_mins=max_wait_mins,
    )


class ScriptedClient(RecognitionClient):
    """Client replying from a per-key script, then with a default reply"""

    saturation_marker = "return 0B."

    def __init__(self, replies=None, default="cat:0.9;dog:0.1", on_call=None, delay=None):
        self.replies = {key: list(script) for key, script in (replies or {}).items()}
        self.default = default
        self.on_call = on_call
        self.delay = delay
        self.calls = []
        self.payloads = {}
        self._lock = threading.Lock()

    def call(self, payload, key):
        with self._lock:
            self.calls.append(key)
            self.payloads[key] = payload
            script = self.replies.get(key)
            reply = script.pop(0) if script else self.default
        if self.delay is not None:
            time.sleep(self.delay(key))
        if self.on_call is not None:
            self.on_call(key)
        if isinstance(reply, Exception):
            raise reply
        return self._normalize(reply)


def _log_lines(evaluator):
    return evaluator.log_path.read_text(encoding="utf-8").splitlines()


def _summary_lines(setting):
    return setting.result_file.read_text(encoding="utf-8").splitlines()


class TestBackoffMinutes:
    """Test backoff_minutes()"""

    @pytest.mark.parametrize("global_retry, max_wait, expected", [
        (0, 60, 0),
        (1, 60, 1),
        (2, 60, 2),
        (3, 60, 4),
        (6, 60, 32),
        (7, 60, 60),
        (3, 3, 3),
        (5, 0, 0),
    ])
    def test_values(self, global_retry, max_wait, expected):
        assert backoff_minutes(global_retry, max_wait) == expected


class TestOrderedMap:
    """Test ordered_map()"""

    def test_results_in_input_order(self):
        def slow_square(n):
            time.sleep(0.001 * ((7 - n) % 4))
            return n * n

        assert list(ordered_map(slow_square, range(20), concurrency=4)) == [n * n for n in range(20)]

    def test_items_consumed_lazily(self):
        consumed = []

        def items():
            for n in range(100):
                consumed.append(n)
                yield n

        results = ordered_map(lambda n: n, items(), concurrency=1)
        assert next(results) == 0
        assert len(consumed) <= 3
        results.close()

    def test_exception_propagates(self):
        def fail_on_three(n):
            if n == 3:
                raise RuntimeError("boom")
            return n

        with pytest.raises(RuntimeError, match="boom"):
            list(ordered_map(fail_on_three, range(6), concurrency=2))

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            list(ordered_map(lambda n: n, [1], concurrency=0))


class TestEvaluatorRun:
    """Evaluator.run() end to end against a scripted client"""

    def test_all_succeed_first_pass(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2", "k3"], max_retry=1)
        client = ScriptedClient()
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=2)

        assert state == EvaluationState.COMPLETED
        assert evaluator.state == EvaluationState.COMPLETED
        lines = _log_lines(evaluator)
        assert [line.split("\t")[0] for line in lines] == ["k1", "k2", "k3"]
        assert all(len(line.split("\t")) == 4 for line in lines)
        assert lines[0].split("\t")[2] == "cat:0.9;dog:0.1"
        assert evaluator.succeeded == 3
        assert evaluator.processed == 3
        assert client.payloads["k2"] == b"k2"

        summary = _summary_lines(setting)
        assert len(summary) == 1
        cols = summary[0].split("\t")
        assert cols[0] == "svc"
        assert cols[1] == evaluator.log_path.name
        assert cols[4:7] == ["0", "3", "3"]

    def test_log_name_and_location(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"])
        evaluator = Evaluator("svc", setting, ScriptedClient())

        evaluator.run(concurrency=1)

        assert evaluator.log_path.parent == setting.log_dir
        assert evaluator.log_path.name.startswith("svc_")
        assert evaluator.log_path.suffix == ".log"

    def test_always_failing_service_exhausts(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2", "k3"], max_retry=1)
        client = ScriptedClient(default="$SystemError$ unreachable")
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=2)

        assert state == EvaluationState.EXHAUSTED
        assert len(client.calls) == 9
        lines = _log_lines(evaluator)
        assert len(lines) == 3
        assert all(line.split("\t")[2].startswith("$SystemError$") for line in lines)
        assert evaluator.succeeded == 0
        assert _summary_lines(setting)[0].split("\t")[4:7] == ["0", "3", "0"]

    def test_client_exception_is_logged_as_error(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"], max_retry=1)
        client = ScriptedClient(default=RuntimeError("socket closed"))
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=1)

        assert state == EvaluationState.EXHAUSTED
        result = _log_lines(evaluator)[0].split("\t")[2]
        assert result.startswith("$SystemError$")
        assert "RuntimeError" in result

    @pytest.mark.parametrize("reply", [
        "cat:0.9\ndog:0.1",
        "cat:0.9\tdog:0.1",
        "cat:0.9;\r\ndog:0.1\n",
    ])
    def test_multi_line_reply_stays_one_log_line(self, tmp_path, reply):
        setting = _make_setting(tmp_path, ["k1", "k2"], max_retry=3)
        client = ScriptedClient(default=reply)
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=2)

        assert state == EvaluationState.COMPLETED
        assert client.calls.count("k1") == 1
        assert client.calls.count("k2") == 1
        lines = _log_lines(evaluator)
        assert len(lines) == 2
        assert all(len(line.split("\t")) == 4 for line in lines)
        assert evaluator.succeeded == 2

    def test_reply_from_unnormalized_client_is_flattened(self, tmp_path):
        class RawClient(RecognitionClient):
            def call(self, payload, key):
                return "cat:0.9\n\tdog:0.1"

        setting = _make_setting(tmp_path, ["k1"], max_retry=2)
        evaluator = Evaluator("svc", setting, RawClient())

        state = evaluator.run(concurrency=1)

        assert state == EvaluationState.COMPLETED
        assert _log_lines(evaluator)[0].split("\t")[2] == "cat:0.9 dog:0.1"

    def test_empty_count_cache_is_recounted(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2"])
        setting.count_file.write_text("", encoding="utf-8")
        evaluator = Evaluator("svc", setting, ScriptedClient())

        state = evaluator.run(concurrency=1)

        assert state == EvaluationState.COMPLETED
        assert evaluator.total == 2

    def test_local_retry_on_saturation(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2"], max_retry=1)
        client = ScriptedClient(replies={"k1": ["busy return 0B.", "$SystemError$ timeout"]})
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=1)

        assert state == EvaluationState.COMPLETED
        assert client.calls.count("k1") == 3
        lines = _log_lines(evaluator)
        assert len(lines) == 2
        assert lines[0].split("\t")[2] == "cat:0.9;dog:0.1"

    def test_local_retry_limit_from_dispatch_config(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"], max_retry=1)
        client = ScriptedClient(default="$SystemError$ down")
        evaluator = Evaluator("svc", setting, client, dispatch=DispatchConfig(max_local_retries=5))

        evaluator.run(concurrency=1)

        assert len(client.calls) == 5

    def test_global_retry_pass(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2", "k3"], max_retry=2)
        client = ScriptedClient(replies={"k2": ["$SystemError$ down"] * 3})
        evaluator = Evaluator("svc", setting, client)

        with patch.object(Evaluator, "_wait_for_retry", return_value=False) as mock_wait:
            state = evaluator.run(concurrency=2)

        assert state == EvaluationState.COMPLETED
        mock_wait.assert_called_once_with(1)
        assert client.calls.count("k1") == 1
        assert client.calls.count("k2") == 4
        lines = _log_lines(evaluator)
        assert [line.split("\t")[0] for line in lines] == ["k1", "k2", "k3", "k2"]
        assert lines[1].split("\t")[2].startswith("$SystemError$")
        assert lines[3].split("\t")[2] == "cat:0.9;dog:0.1"
        assert evaluator.retries_used == 1
        assert _summary_lines(setting)[0].split("\t")[4:7] == ["1", "4", "3"]

    def test_backoff_doubles_and_caps(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"], max_retry=5, max_wait_mins=3)
        client = ScriptedClient(default="$SystemError$ down")
        evaluator = Evaluator("svc", setting, client)

        with patch.object(Evaluator, "_wait_for_retry", return_value=False) as mock_wait:
            state = evaluator.run(concurrency=1)

        assert state == EvaluationState.EXHAUSTED
        assert [c.args[0] for c in mock_wait.call_args_list] == [1, 2, 3, 3]
        assert len(_log_lines(evaluator)) == 5

    def test_invalid_payload_not_sent(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2"], max_retry=1, data={"k1": "not base64!!"})
        client = ScriptedClient()
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=1)

        assert state == EvaluationState.EXHAUSTED
        assert client.calls == ["k2"]
        first = _log_lines(evaluator)[0].split("\t")
        assert first[0] == "k1"
        assert first[2].startswith("$SystemError$ Invalid payload")

    def test_record_with_wrong_field_count_skipped(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2"], max_retry=1)
        with open(setting.dataset_file, "a", encoding="utf-8") as f:
            f.write("k3\tcat\n")
        client = ScriptedClient()
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=1)

        assert state == EvaluationState.EXHAUSTED
        assert client.calls == ["k1", "k2"]
        assert evaluator.total == 3

    def test_ordered_log_under_concurrency(self, tmp_path):
        keys = [f"{c}{n}" for c in "abcdefghijklmnopqrstuvwxyz" for n in range(3)]
        setting = _make_setting(tmp_path, keys, max_retry=1)
        client = ScriptedClient(delay=lambda key: 0.001 * (ord(key[0]) % 5))
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=8)

        assert state == EvaluationState.COMPLETED
        assert [line.split("\t")[0] for line in _log_lines(evaluator)] == keys

    def test_run_twice_raises(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"])
        evaluator = Evaluator("svc", setting, ScriptedClient())
        evaluator.run(concurrency=1)

        with pytest.raises(RuntimeError):
            evaluator.run(concurrency=1)

    def test_invalid_arguments(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"])
        with pytest.raises(ValueError):
            Evaluator("svc", setting, ScriptedClient(), dispatch=DispatchConfig(max_local_retries=0))
        with pytest.raises(ValueError):
            Evaluator("svc", setting, ScriptedClient()).run(concurrency=0)


class TestResume:
    """Resumption from the latest log"""

    def test_resume_completed_log_is_idempotent(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2", "k3"])
        first = Evaluator("svc", setting, ScriptedClient())
        first.run(concurrency=2)
        lines_before = _log_lines(first)

        client = ScriptedClient()
        second = Evaluator("svc", setting, client)
        state = second.run(concurrency=2, resume=True)

        assert state == EvaluationState.COMPLETED
        assert second.log_path == first.log_path
        assert client.calls == []
        assert _log_lines(second) == lines_before
        assert len(_summary_lines(setting)) == 2

    def test_resume_only_dispatches_missing_keys(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2", "k3", "k4"])
        setting.ensure_log_dir()
        log_path = setting.log_dir / "svc_20260101_000000.log"
        log_path.write_text(
            "k1\tcat\tcat:0.9\t20260101_000001.000\n"
            "k2\tcat\t$SystemError$ down\t20260101_000002.000\n"
            "k3\tcat\tcat:0.",
            encoding="utf-8",
        )

        client = ScriptedClient()
        evaluator = Evaluator("svc", setting, client)
        state = evaluator.run(concurrency=1, resume=True)

        assert state == EvaluationState.COMPLETED
        assert evaluator.log_path == log_path
        assert client.calls == ["k2", "k3", "k4"]
        assert evaluator.succeeded == 4

    def test_resume_uses_injected_lister(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"])
        setting.ensure_log_dir()
        chosen = setting.log_dir / "svc_20250101_000000.log"
        chosen.write_text("k1\tcat\tcat:0.9\t20250101_000000.000\n", encoding="utf-8")

        client = ScriptedClient()
        evaluator = Evaluator("svc", setting, client, list_logs=lambda _: [chosen])
        state = evaluator.run(concurrency=1, resume=True)

        assert state == EvaluationState.COMPLETED
        assert evaluator.log_path == chosen
        assert client.calls == []

    def test_resume_without_log_starts_new(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"])
        client = ScriptedClient()
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=1, resume=True)

        assert state == EvaluationState.COMPLETED
        assert client.calls == ["k1"]


class TestCancellation:
    """Cooperative cancellation"""

    def test_cancel_during_backoff(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"], max_retry=3)
        client = ScriptedClient(default="$SystemError$ down")
        evaluator = Evaluator("svc", setting, client)

        with patch.object(Evaluator, "_wait_for_retry", return_value=True):
            state = evaluator.run(concurrency=1)

        assert state == EvaluationState.CANCELLED
        assert len(client.calls) == 3
        assert len(_summary_lines(setting)) == 1

    def test_backoff_wait_returns_on_cancel(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"])
        evaluator = Evaluator("svc", setting, ScriptedClient())
        evaluator.cancel()

        started = time.monotonic()
        assert evaluator._wait_for_retry(60) is True
        assert time.monotonic() - started < 5

    def test_cancel_during_dispatch(self, tmp_path):
        keys = [f"k{n}" for n in range(10)]
        setting = _make_setting(tmp_path, keys, max_retry=3)
        evaluator = None

        def cancel_on_second(key):
            if key == "k1":
                evaluator.cancel()

        client = ScriptedClient(on_call=cancel_on_second)
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=1)

        assert state == EvaluationState.CANCELLED
        assert client.calls == ["k0", "k1"]
        lines = _log_lines(evaluator)
        assert len(lines) <= 2
        assert all(len(line.split("\t")) == 4 for line in lines)
        # The k1 call finished after the cancel but was never logged, so it is not counted
        assert evaluator.processed == len(lines)
        assert evaluator.succeeded == len(lines)
        summary = _summary_lines(setting)
        assert len(summary) == 1
        assert summary[0].split("\t")[5:7] == [str(len(lines)), str(len(lines))]

    def test_in_flight_results_after_cancel_not_counted(self, tmp_path):
        keys = [f"k{n}" for n in range(12)]
        setting = _make_setting(tmp_path, keys, max_retry=1)
        evaluator = None

        def cancel_on_first(key):
            if key == "k0":
                evaluator.cancel()

        client = ScriptedClient(on_call=cancel_on_first, delay=lambda key: 0.01)
        evaluator = Evaluator("svc", setting, client)

        state = evaluator.run(concurrency=4)

        assert state == EvaluationState.CANCELLED
        lines = _log_lines(evaluator)
        assert lines == []
        assert evaluator.processed == 0
        assert evaluator.succeeded == 0
        assert _summary_lines(setting)[0].split("\t")[5:7] == ["0", "0"]

    def test_cancel_before_run(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2"])
        client = ScriptedClient()
        evaluator = Evaluator("svc", setting, client)
        evaluator.cancel()

        state = evaluator.run(concurrency=1)

        assert state == EvaluationState.CANCELLED
        assert client.calls == []


class TestProgress:
    """Evaluator.progress()"""

    def test_idle_snapshot(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"])
        snapshot = Evaluator("svc", setting, ScriptedClient()).progress()

        assert snapshot.state == EvaluationState.IDLE
        assert snapshot.processed == 0
        assert snapshot.throughput == 0.0

    def test_snapshot_after_run(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1", "k2"])
        evaluator = Evaluator("svc", setting, ScriptedClient())
        evaluator.run(concurrency=1)

        snapshot = evaluator.progress()

        assert snapshot.state == EvaluationState.COMPLETED
        assert snapshot.total == 2
        assert snapshot.processed == 2
        assert snapshot.succeeded == 2
        assert "svc: progress: 2 / 2" in snapshot.describe()


class TestMakeEvaluatorFactory:
    """make_evaluator_factory()"""

    def test_builds_evaluator_with_client(self, tmp_path):
        setting = _make_setting(tmp_path, ["k1"])
        config = HarnessConfig(dispatch=DispatchConfig(max_local_retries=2))
        created = []

        def create_client_fn(service_id, cfg):
            created.append((service_id, cfg))
            return ScriptedClient()

        factory = make_evaluator_factory(setting, config, create_client_fn=create_client_fn)
        evaluator = factory("svc")

        assert isinstance(evaluator, Evaluator)
        assert evaluator.service_id == "svc"
        assert evaluator.setting is setting
        assert evaluator.dispatch.max_local_retries == 2
        assert created == [("svc", config)]
