"""
Request-scoped tracing and diagnostics for fit evaluations.

Provides a thread-local TraceContext that records:
  - Per-stage timing (stage_name, elapsed_ms, api_calls, skipped, errors)
  - Per-outbound-call timing (service, endpoint, elapsed_ms, status)
  - Per-provider outcome (success / failure / skipped, with error class)
  - The cancellation flag for the request, and abort hooks for the
    provider calls in flight when it is set

The trace is rendered into the `diagnostics` object of every ScoreResult,
so a failed provider can be debugged from the response alone.  Nothing
recorded here ever includes a credential.

Usage:
    from fit_trace import TraceContext, get_trace, set_trace, clear_trace

    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In API clients (automatically via _traced_get helpers):
    trace = get_trace()
    if trace:
        trace.record_api_call(...)
"""

import threading
import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from models import EvaluationCancelled

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound HTTP call (Google Maps, Mapbox, HowLoud, OpenWeather, ...)."""
    service: str
    endpoint: str
    elapsed_ms: int
    status_code: int
    provider_status: str = ""
    stage: str = ""


@dataclass
class StageRecord:
    """One pipeline stage (geocode, signals, targets, compose, recap)."""
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    skipped: bool = False
    error_class: str = ""
    error_message: str = ""


@dataclass
class ProviderOutcome:
    status: str            # success | failure | skipped
    error_class: str = ""
    detail: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing and outcome data for a single evaluation request.

    Concurrent tasks share one context.  Each task records under its own
    provider key and list.append is GIL-atomic, so no lock is taken.
    """
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    providers: Dict[str, ProviderOutcome] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    model_version: str = ""
    # Abort callbacks of provider calls currently in flight.
    _abort_hooks: List[Callable[[], None]] = field(default_factory=list, repr=False)
    _hooks_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self):
        """Raise EvaluationCancelled if the request has been cancelled."""
        if self.cancel_event.is_set():
            raise EvaluationCancelled(f"trace {self.trace_id} cancelled")

    def add_abort_hook(self, hook: Callable[[], None]):
        """Register a callback that interrupts one in-flight call.

        If the request is already cancelled the hook runs immediately.
        """
        with self._hooks_lock:
            if not self.cancel_event.is_set():
                self._abort_hooks.append(hook)
                return
        hook()

    def remove_abort_hook(self, hook: Callable[[], None]):
        with self._hooks_lock:
            if hook in self._abort_hooks:
                self._abort_hooks.remove(hook)

    def abort_in_flight(self) -> int:
        """Run and drop every registered abort hook.  Returns how many ran."""
        with self._hooks_lock:
            hooks, self._abort_hooks = self._abort_hooks, []
        for hook in hooks:
            try:
                hook()
            except OSError as e:
                logger.debug("abort hook failed: %s", e)
        if hooks:
            logger.info("[cancel] trace=%s aborted %d in-flight call(s)", self.trace_id, len(hooks))
        return len(hooks)

    # ------------------------------------------------------------------
    # Stage lifecycle
    # ------------------------------------------------------------------

    def start_stage(self, name: str):
        # Per thread: signals and targets run as concurrent stages.
        _trace_local.stage = name

    def end_stage(self):
        _trace_local.stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        skipped: bool = False,
        error_class: str = "",
        error_message: str = "",
    ):
        api_in_stage = sum(1 for c in self.api_calls if c.stage == stage_name)
        rec = StageRecord(
            stage_name=stage_name,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            api_calls_made=api_in_stage,
            skipped=skipped,
            error_class=error_class,
            error_message=error_message,
        )
        self.stages.append(rec)

        status = "SKIP" if skipped else ("ERR" if error_class else "OK")
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id,
            stage_name,
            status,
            rec.elapsed_ms,
            api_in_stage,
            err_info,
        )

    # ------------------------------------------------------------------
    # API call recording
    # ------------------------------------------------------------------

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            stage=current_stage(),
        )
        self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            current_stage() or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status,
        )

    # ------------------------------------------------------------------
    # Provider outcomes
    # ------------------------------------------------------------------

    def record_success(self, provider: str, detail: str = ""):
        self.providers[provider] = ProviderOutcome(status=SUCCESS, detail=detail)

    def record_failure(self, provider: str, exc: Optional[BaseException] = None, detail: str = ""):
        error_class = type(exc).__name__ if exc is not None else ""
        if not detail and exc is not None:
            detail = str(exc)[:200]
        self.providers[provider] = ProviderOutcome(
            status=FAILURE, error_class=error_class, detail=detail,
        )

    def record_skipped(self, provider: str, detail: str = ""):
        self.providers[provider] = ProviderOutcome(status=SKIPPED, detail=detail)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    # Maximum per-call records included in diagnostics to prevent bloat.
    MAX_CALL_RECORDS = 200

    def outcome(self) -> str:
        statuses = [p.status for p in self.providers.values()]
        if not statuses:
            return "empty"
        if all(s == SUCCESS for s in statuses):
            return "success"
        if SUCCESS not in statuses:
            return "degraded"
        return "partial"

    def summary_dict(self) -> Dict[str, Any]:
        total_elapsed = int((time.time() - self.request_start) * 1000)
        result = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "stages": len(self.stages),
            "final_outcome": self.outcome(),
        }
        if self.model_version:
            result["model_version"] = self.model_version
        return result

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d stages=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["stages"],
            s["final_outcome"],
        )

    # ------------------------------------------------------------------
    # Serialisation helpers (for the diagnostics object)
    # ------------------------------------------------------------------
    # Timings and the trace id stay in the logs; the diagnostics object is
    # part of the result and must be identical across runs given identical
    # provider responses.  Concurrent stages finish in arbitrary order, so
    # stages and call counts are sorted.

    def providers_to_dict(self) -> Dict[str, Dict[str, str]]:
        out = {}
        for name in sorted(self.providers):
            p = self.providers[name]
            entry = {"status": p.status}
            if p.error_class:
                entry["error"] = p.error_class
            if p.detail:
                entry["detail"] = p.detail
            out[name] = entry
        return out

    def stages_to_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "stage": s.stage_name,
                "apiCalls": s.api_calls_made,
                "skipped": s.skipped,
                "error": (
                    f"{s.error_class}: {s.error_message}"
                    if s.error_class else None
                ),
            }
            for s in sorted(self.stages, key=lambda s: s.stage_name)
        ]

    def api_call_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for c in self.api_calls[:self.MAX_CALL_RECORDS]:
            key = f"{c.service}.{c.endpoint}"
            counts[key] = counts.get(key, 0) + 1
        return dict(sorted(counts.items()))

    def diagnostics_dict(self) -> Dict[str, Any]:
        """Trace portion of ScoreResult.diagnostics."""
        return {
            "modelVersion": self.model_version,
            "outcome": self.outcome(),
            "providers": self.providers_to_dict(),
            "stages": self.stages_to_list(),
            "apiCalls": self.api_call_counts(),
        }


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace context."""
    _trace_local.ctx = None


def current_stage() -> str:
    """Name of the stage running on this thread, or ""."""
    return getattr(_trace_local, "stage", "")
