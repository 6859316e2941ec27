"""Unit tests for fit_trace.py — request-scoped tracing and diagnostics.

Tests cover: stage and API call recording, provider outcomes, the
deterministic diagnostics shape, cancellation, and thread-local storage.
"""

import threading
import time

import pytest

from fit_trace import (
    FAILURE,
    SKIPPED,
    SUCCESS,
    TraceContext,
    clear_trace,
    current_stage,
    get_trace,
    set_trace,
)
from models import EvaluationCancelled, UpstreamUnavailable


# =========================================================================
# Stage lifecycle
# =========================================================================

class TestStageRecording:
    def test_record_stage(self):
        ctx = TraceContext(trace_id="test-1")
        t0 = time.time()
        ctx.record_stage("geocode", t0, t0 + 0.25)

        assert len(ctx.stages) == 1
        assert ctx.stages[0].stage_name == "geocode"
        assert ctx.stages[0].elapsed_ms == 250
        assert ctx.stages[0].skipped is False

    def test_api_calls_attributed_to_current_stage(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.start_stage("sound")
        ctx.record_api_call("howloud", "soundscore", 40, 200, "OK")
        ctx.end_stage()
        ctx.record_api_call("openai", "chat", 10, 200, "OK")

        assert ctx.api_calls[0].stage == "sound"
        assert ctx.api_calls[1].stage == ""

        t = time.time()
        ctx.record_stage("sound", t, t)
        assert ctx.stages[0].api_calls_made == 1

    def test_stage_is_per_thread(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.start_stage("main")
        seen = []

        def worker():
            ctx.start_stage("worker")
            seen.append(current_stage())

        t = threading.Thread(target=worker)
        t.start()
        t.join()

        assert seen == ["worker"]
        assert current_stage() == "main"
        ctx.end_stage()


# =========================================================================
# Provider outcomes
# =========================================================================

class TestProviderOutcomes:
    def test_failure_records_error_class_and_detail(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.record_failure("sound", UpstreamUnavailable("howloud", "HTTP 500"))

        outcome = ctx.providers["sound"]
        assert outcome.status == FAILURE
        assert outcome.error_class == "UpstreamUnavailable"
        assert "HTTP 500" in outcome.detail

    def test_outcome_rollup(self):
        ctx = TraceContext(trace_id="test-1")
        assert ctx.outcome() == "empty"
        ctx.record_success("sound")
        assert ctx.outcome() == "success"
        ctx.record_failure("air_quality", detail="down")
        assert ctx.outcome() == "partial"

        degraded = TraceContext(trace_id="test-2")
        degraded.record_failure("sound", detail="down")
        degraded.record_skipped("night_sky", "no coordinates")
        assert degraded.outcome() == "degraded"

    def test_providers_to_dict_sorted_and_sparse(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.record_success("sound")
        ctx.record_skipped("air_quality", "no coordinates")

        out = ctx.providers_to_dict()
        assert list(out) == ["air_quality", "sound"]
        assert out["sound"] == {"status": SUCCESS}
        assert out["air_quality"] == {"status": SKIPPED, "detail": "no coordinates"}


# =========================================================================
# Diagnostics
# =========================================================================

class TestDiagnostics:
    def _populated(self, trace_id, order):
        ctx = TraceContext(trace_id=trace_id, model_version="2.1.0")
        for name in order:
            ctx.start_stage(name)
            ctx.record_api_call(name, "get", 5 + len(trace_id), 200, "OK")
            ctx.record_stage(name, 0.0, 0.1 * len(trace_id))
            ctx.end_stage()
            ctx.record_success(name)
        return ctx

    def test_independent_of_timing_and_completion_order(self):
        a = self._populated("a", ["sound", "air_quality", "night_sky"])
        b = self._populated("bbbb", ["night_sky", "sound", "air_quality"])
        assert a.diagnostics_dict() == b.diagnostics_dict()

    def test_shape(self):
        d = self._populated("a", ["sound"]).diagnostics_dict()
        assert d["modelVersion"] == "2.1.0"
        assert d["outcome"] == "success"
        assert d["stages"] == [{"stage": "sound", "apiCalls": 1, "skipped": False, "error": None}]
        assert d["apiCalls"] == {"sound.get": 1}
        assert "trace_id" not in d

    def test_summary_dict(self):
        ctx = TraceContext(trace_id="abc", model_version="2.1.0")
        s = ctx.summary_dict()
        assert s["trace_id"] == "abc"
        assert s["final_outcome"] == "empty"
        assert s["model_version"] == "2.1.0"


# =========================================================================
# Cancellation and thread-local storage
# =========================================================================

class TestCancellation:
    def test_check_cancelled(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.check_cancelled()
        ctx.cancel_event.set()
        assert ctx.cancelled
        with pytest.raises(EvaluationCancelled):
            ctx.check_cancelled()

    def test_shared_event(self):
        event = threading.Event()
        ctx = TraceContext(trace_id="test-1", cancel_event=event)
        event.set()
        assert ctx.cancelled

    def test_abort_in_flight_runs_hooks_once(self):
        ctx = TraceContext(trace_id="test-1")
        calls = []
        ctx.add_abort_hook(lambda: calls.append("a"))
        ctx.add_abort_hook(lambda: calls.append("b"))

        assert ctx.abort_in_flight() == 2
        assert ctx.abort_in_flight() == 0
        assert calls == ["a", "b"]

    def test_removed_hook_not_run(self):
        ctx = TraceContext(trace_id="test-1")
        calls = []
        hook = lambda: calls.append("x")  # noqa: E731
        ctx.add_abort_hook(hook)
        ctx.remove_abort_hook(hook)
        ctx.remove_abort_hook(hook)

        assert ctx.abort_in_flight() == 0
        assert calls == []

    def test_hook_added_after_cancel_runs_immediately(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.cancel_event.set()
        calls = []
        ctx.add_abort_hook(lambda: calls.append("late"))
        assert calls == ["late"]

    def test_failing_hook_does_not_stop_others(self):
        ctx = TraceContext(trace_id="test-1")
        calls = []

        def broken():
            raise OSError("already closed")

        ctx.add_abort_hook(broken)
        ctx.add_abort_hook(lambda: calls.append("ok"))
        assert ctx.abort_in_flight() == 2
        assert calls == ["ok"]


class TestThreadLocal:
    def test_set_get_clear(self):
        ctx = TraceContext(trace_id="test-1")
        set_trace(ctx)
        assert get_trace() is ctx
        clear_trace()
        assert get_trace() is None

    def test_not_visible_in_other_threads(self):
        set_trace(TraceContext(trace_id="test-1"))
        seen = []
        t = threading.Thread(target=lambda: seen.append(get_trace()))
        t.start()
        t.join()
        assert seen == [None]
