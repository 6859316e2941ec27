#!/usr/bin/env python3
"""
Listing Fit Engine
Scores a real-estate listing for any viewer (basicScore) and for one
user's stated preferences (personalizedScore), with a short recap.

Pipeline per request:
    geocode (skipped when coordinates are supplied)
      -> sound | air_quality | night_sky | target:<label> ...  (concurrent)
      -> compose
      -> recap

Only InputValidationError (and EvaluationCancelled, when the caller
cancels) escapes evaluate(); every provider failure is absorbed and
reported in the result's diagnostics.

Usage:
    python fit_engine.py request.json --pretty
    cat request.json | python fit_engine.py -
"""

import argparse
import json
import logging
import sys
import threading
import time
import uuid
from concurrent.futures import ALL_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Tuple

from air_quality import OpenWeatherAirClient, fetch_air_signal
from fit_config import EngineConfig
from fit_trace import TraceContext, clear_trace, get_trace, set_trace
from geocoder import GeocodeOutcome, OpenWeatherGeocoder, geocode_address
from maps_client import GoogleMapsClient, MapboxClient
from models import (
    Coordinates,
    EnvironmentSignals,
    EvaluationCancelled,
    FitRequest,
    GeocodingExhausted,
    InputValidationError,
    ListingInput,
    PlaceTargetPreference,
    ProximityTarget,
    ScoreResult,
    SignalReading,
    parse_request,
    result_to_dict,
)
from night_sky import (
    FallbackNightSkyProvider,
    LightPollutionApiProvider,
    LightPollutionPageProvider,
    fetch_night_sky_signal,
)
from providers import ProviderSet
from proximity import resolve_target
from recap import OpenAIRecapClient, generate_recap
from score_composer import compose_scores
from scoring_config import SCORING_MODEL
from sound import HowLoudClient, fetch_sound_signal

logger = logging.getLogger(__name__)

# How often the join and the cancel watcher re-check the cancellation flag.
_JOIN_POLL_S = 0.05

SIGNAL_STAGES = ("sound", "air_quality", "night_sky")


# =============================================================================
# STAGE HELPERS
# =============================================================================

def _timed_stage(stage_name, fn, *args, **kwargs):
    """Run *fn* with timing.  Logs duration and re-raises on failure."""
    trace = get_trace()
    if trace:
        trace.start_stage(stage_name)
    t0 = time.time()
    try:
        result = fn(*args, **kwargs)
        t1 = time.time()
        if trace:
            trace.record_stage(stage_name, t0, t1)
        else:
            logger.info("  [stage] %s OK (%.1fs)", stage_name, t1 - t0)
        return result
    except Exception as exc:
        t1 = time.time()
        if trace:
            trace.record_stage(
                stage_name, t0, t1,
                error_class=type(exc).__name__,
                error_message=str(exc)[:200],
            )
        else:
            logger.warning("  [stage] %s FAILED (%.1fs)", stage_name, t1 - t0, exc_info=True)
        raise
    finally:
        if trace:
            trace.end_stage()


def _timed_stage_in_thread(parent_trace, stage_name, fn, *args, **kwargs):
    """Run _timed_stage in a pool thread with trace propagation."""
    set_trace(parent_trace)
    return _timed_stage(stage_name, fn, *args, **kwargs)


def _abort_on_cancel(trace: TraceContext, done: threading.Event):
    """Interrupt in-flight provider calls as soon as the caller cancels."""
    while not done.is_set():
        if trace.cancel_event.wait(_JOIN_POLL_S):
            trace.abort_in_flight()
            return


def _skip_stage(trace: TraceContext, stage_name: str, provider: str, reason: str):
    now = time.time()
    trace.record_stage(stage_name, now, now, skipped=True)
    trace.record_skipped(provider, reason)


def _round_or_none(value: Optional[float], digits: int = 4) -> Optional[float]:
    return None if value is None else round(value, digits)


# =============================================================================
# PROVIDER WIRING
# =============================================================================

def build_providers(config: EngineConfig) -> ProviderSet:
    """Production clients for every collaborator, from one config."""
    google = GoogleMapsClient(config.google_maps_api_key, timeout=config.request_timeout_s)
    mapbox = MapboxClient(config.mapbox_access_token, timeout=config.request_timeout_s)
    return ProviderSet(
        geocoder=google,
        secondary_geocoder=OpenWeatherGeocoder(
            config.openweather_api_key, timeout=config.request_timeout_s,
        ),
        places=google,
        distance_matrix=mapbox,
        routing=mapbox,
        sound=HowLoudClient(
            config.howloud_api_key, config.howloud_client_id, timeout=config.request_timeout_s,
        ),
        air_quality=OpenWeatherAirClient(
            config.openweather_api_key, timeout=config.request_timeout_s,
        ),
        night_sky=FallbackNightSkyProvider([
            LightPollutionApiProvider(config.light_pollution_api_url, timeout=config.request_timeout_s),
            LightPollutionPageProvider(config.light_pollution_page_url, timeout=config.request_timeout_s),
        ]),
        text_generation=OpenAIRecapClient(
            config.openai_api_key,
            model=config.openai_model,
            timeout=config.openai_timeout_s,
        ),
    )


# =============================================================================
# ENGINE
# =============================================================================

class FitEngine:
    """Evaluates FitRequests against an injected set of providers.

    Holds only read-only configuration and provider clients, so one
    instance serves any number of concurrent requests.
    """

    def __init__(self, config: Optional[EngineConfig] = None, providers: Optional[ProviderSet] = None):
        self.config = config or EngineConfig()
        self.providers = providers or build_providers(self.config)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def evaluate_payload(self, body: Any, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Validate a JSON body, evaluate it and return the response dict."""
        return result_to_dict(self.evaluate(parse_request(body), cancel_event=cancel_event))

    def evaluate(
        self,
        request: FitRequest,
        cancel_event: Optional[threading.Event] = None,
        trace_id: Optional[str] = None,
    ) -> ScoreResult:
        """Run the full pipeline for one request.

        Setting *cancel_event* stops any provider call that has not yet
        started, aborts the ones in flight, drops queued tasks, and makes
        this raise EvaluationCancelled.
        """
        trace = TraceContext(
            trace_id=trace_id or uuid.uuid4().hex[:10],
            cancel_event=cancel_event or threading.Event(),
            model_version=SCORING_MODEL.version,
        )
        set_trace(trace)
        done = threading.Event()
        watcher = threading.Thread(
            target=_abort_on_cancel, args=(trace, done),
            name=f"fit-cancel-{trace.trace_id}", daemon=True,
        )
        watcher.start()
        try:
            return self._run(request, trace)
        finally:
            done.set()
            trace.log_summary()
            clear_trace()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(self, request: FitRequest, trace: TraceContext) -> ScoreResult:
        listing, prefs = request.listing, request.prefs
        trace.check_cancelled()

        coords, geocode_diag = self._locate(listing, trace)
        trace.check_cancelled()

        readings, targets = self._fan_out(listing, prefs.place_targets, coords, trace)
        trace.check_cancelled()

        environment = _environment_from(readings)
        if not prefs.place_targets:
            # Precomputed listing targets are reported but never personalize.
            targets = list(listing.targets)

        composite = _timed_stage("compose", compose_scores, listing, environment, prefs, targets)
        recap = _timed_stage(
            "recap", generate_recap,
            self.providers.text_generation, listing, prefs, composite.scored_targets, environment,
        )

        diagnostics = trace.diagnostics_dict()
        diagnostics.update({
            "geocode": geocode_diag,
            "signals": {
                name: {"raw": reading.raw, "detail": reading.detail}
                for name, reading in sorted(readings.items())
                if reading is not None
            },
            "subScores": {k: _round_or_none(v) for k, v in composite.sub_scores.items()},
            "weights": dict(sorted(composite.weights.items())),
            "weightsSum": round(sum(composite.weights.values()), 4),
            "recap": {"source": recap.source, "error": recap.error or None},
        })

        return ScoreResult(
            basic_score=composite.basic_score,
            personalized_score=composite.personalized_score,
            recap=recap.text,
            scored_targets=composite.scored_targets,
            is_personalized=composite.is_personalized,
            environment=environment,
            coordinates=coords,
            diagnostics=diagnostics,
        )

    def _locate(self, listing: ListingInput, trace: TraceContext) -> Tuple[Optional[Coordinates], Dict[str, Any]]:
        if listing.coordinates is not None:
            _skip_stage(trace, "geocode", "geocoding", "coordinates supplied")
            return listing.coordinates, {"status": "supplied"}

        outcome: GeocodeOutcome = _timed_stage(
            "geocode", geocode_address,
            listing.address, self.providers.geocoder, self.providers.secondary_geocoder,
        )
        if not outcome.ok:
            trace.record_failure(
                "geocoding",
                GeocodingExhausted(f"no match after {outcome.attempts} attempts"),
            )
            return None, {"status": "failed", "attempts": outcome.attempts}

        trace.record_success("geocoding", detail=outcome.provider)
        return outcome.coordinates, {
            "status": "resolved",
            "provider": outcome.provider,
            "variant": outcome.variant,
            "attempts": outcome.attempts,
        }

    def _fan_out(
        self,
        listing: ListingInput,
        wanted: List[PlaceTargetPreference],
        coords: Optional[Coordinates],
        trace: TraceContext,
    ) -> Tuple[Dict[str, Optional[SignalReading]], List[ProximityTarget]]:
        """Signals and per-target resolution, concurrently, joined.

        Each task fills only its own slot; a failed or unfinished task
        leaves its slot absent.
        """
        readings: Dict[str, Optional[SignalReading]] = {name: None for name in SIGNAL_STAGES}
        targets: List[ProximityTarget] = [
            ProximityTarget(label=t.label, max_distance_miles=t.max_distance_miles) for t in wanted
        ]

        # (slot, provider key, stage name, fn, args)
        tasks = []
        if coords is None:
            for name in SIGNAL_STAGES:
                _skip_stage(trace, name, name, "no coordinates")
        else:
            p = self.providers
            tasks.extend([
                ("sound", "sound", "sound", fetch_sound_signal, (p.sound, coords)),
                ("air_quality", "air_quality", "air_quality", fetch_air_signal, (p.air_quality, coords)),
                ("night_sky", "night_sky", "night_sky", fetch_night_sky_signal, (p.night_sky, coords)),
            ])

        for i, pref in enumerate(wanted):
            key = f"target:{pref.label}"
            known = _known_target(listing, pref)
            if known is not None:
                targets[i] = known
                _skip_stage(trace, key, key, "distance supplied with listing")
            elif coords is None:
                _skip_stage(trace, key, key, "no coordinates")
            else:
                tasks.append((
                    i, key, key, resolve_target,
                    (pref.label, pref.max_distance_miles, coords,
                     self.providers.places, self.providers.distance_matrix,
                     self.providers.routing, self.config.candidate_pool),
                ))

        if not tasks:
            return readings, targets

        # One thread per task: every branch starts now, so the stage deadline
        # measures running time, not time spent queued.
        workers = len(tasks)
        if workers > self.config.max_workers:
            logger.warning(
                "%d fan-out tasks exceed FIT_MAX_WORKERS=%d; %d will queue",
                workers, self.config.max_workers, workers - self.config.max_workers,
            )
            workers = self.config.max_workers
        pool = ThreadPoolExecutor(max_workers=max(1, workers))
        try:
            futures = [
                (slot, key, pool.submit(_timed_stage_in_thread, trace, stage, fn, *args))
                for slot, key, stage, fn, args in tasks
            ]
            unfinished = self._join([f for _, _, f in futures], trace)
        finally:
            # Queued tasks are dropped; running ones are aborted on cancel.
            pool.shutdown(wait=False, cancel_futures=True)

        if trace.cancelled:
            raise EvaluationCancelled(f"trace {trace.trace_id} cancelled during fan-out")

        for slot, key, future in futures:
            if future in unfinished:
                logger.warning("%s did not finish within %.1fs", key, self.config.stage_timeout_s)
                trace.record_failure(key, detail=f"timed out after {self.config.stage_timeout_s:g}s")
                continue
            try:
                value = future.result()
            except EvaluationCancelled:
                raise
            except Exception as e:
                logger.warning("%s failed: %s: %s", key, type(e).__name__, e)
                trace.record_failure(key, e)
                continue
            if isinstance(slot, int):
                targets[slot] = value
                trace.record_success(key, detail="" if value.found else "no candidates")
            else:
                readings[slot] = value
                trace.record_success(key)
        return readings, targets

    def _join(self, futures, trace: TraceContext) -> set:
        """Wait for every future, the stage timeout, or cancellation."""
        deadline = time.monotonic() + self.config.stage_timeout_s
        pending = set(futures)
        while pending and not trace.cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            _, pending = wait(pending, timeout=min(remaining, _JOIN_POLL_S), return_when=ALL_COMPLETED)
        if pending and trace.cancelled:
            trace.abort_in_flight()
        return pending


def _known_target(listing: ListingInput, pref: PlaceTargetPreference) -> Optional[ProximityTarget]:
    """A listing-supplied target for the same label with a known distance."""
    for t in listing.targets:
        if t.label.casefold() == pref.label.casefold() and t.distance_miles is not None:
            return ProximityTarget(
                label=pref.label,
                max_distance_miles=pref.max_distance_miles,
                distance_miles=t.distance_miles,
                places=list(t.places),
            )
    return None


def _environment_from(readings: Dict[str, Optional[SignalReading]]) -> EnvironmentSignals:
    sound, air, sky = readings.get("sound"), readings.get("air_quality"), readings.get("night_sky")
    return EnvironmentSignals(
        sound_score=sound.score if sound else None,
        sound_label=sound.label if sound else None,
        air_score=air.score if air else None,
        air_label=air.label if air else None,
        stargaze_score=sky.score if sky else None,
        stargaze_label=sky.label if sky else None,
    )


# =============================================================================
# CLI
# =============================================================================

def _load_request(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Score a listing against a buyer's preferences"
    )
    parser.add_argument(
        "request",
        help="Path to a JSON request {listing, prefs}, or - for stdin",
    )
    parser.add_argument(
        "--pretty",
        action="store_true",
        help="Indent the JSON output",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    config = EngineConfig.from_env()
    missing = config.missing_keys()
    if missing:
        logger.warning("Missing provider credentials: %s", ", ".join(missing))

    try:
        body = _load_request(args.request)
    except (OSError, ValueError) as e:
        print(f"Could not read request: {e}", file=sys.stderr)
        return 2

    try:
        result = FitEngine(config).evaluate_payload(body)
    except InputValidationError as e:
        print(f"Invalid request: {e}", file=sys.stderr)
        return 2

    print(json.dumps(result, indent=2 if args.pretty else None))
    return 0


if __name__ == "__main__":
    sys.exit(main())
