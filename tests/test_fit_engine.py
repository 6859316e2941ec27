"""End-to-end tests for fit_engine.py with fake providers.

No test here touches the network: every collaborator comes from
tests/fakes.py, and text generation fails so the template recap is used.
"""

import json
import threading
from unittest.mock import patch

import pytest

from fakes import (
    AUSTIN,
    METERS_PER_MILE,
    FakeGeocoder,
    FakeMatrix,
    FakeNightSky,
    FakePlaces,
    FakeSound,
    FakeText,
    candidate,
    make_providers,
)
from fit_config import EngineConfig
from fit_engine import FitEngine, build_providers, main
from fit_trace import get_trace
from maps_client import GoogleMapsClient, MapboxClient
from models import EvaluationCancelled, InputValidationError, UpstreamUnavailable, parse_request
from night_sky import FallbackNightSkyProvider
from recap import OpenAIRecapClient
from sound import HowLoudClient

PRESCHOOL = candidate("Little Oaks", 30.2817, -97.7431)


def _body(listing, prefs):
    return {"listing": listing, "prefs": prefs}


def _with_coords(listing):
    return dict(listing, coordinates={"lat": AUSTIN.lat, "lon": AUSTIN.lon})


def _engine(**overrides):
    return FitEngine(EngineConfig(), providers=make_providers(**overrides))


# =========================================================================
# Scoring through the pipeline
# =========================================================================

class TestReferenceScenario:
    def test_no_prefs(self, scenario_listing, empty_prefs):
        out = _engine().evaluate_payload(_body(_with_coords(scenario_listing), empty_prefs))

        assert out["basicScore"] == 85
        assert out["personalizedScore"] == 85
        assert out["isPersonalized"] is False
        assert out["scoredTargets"] == []
        assert out["diagnostics"]["geocode"] == {"status": "supplied"}
        assert out["diagnostics"]["providers"]["geocoding"]["status"] == "skipped"
        assert out["diagnostics"]["recap"]["source"] == "template"

    def test_geocodes_address(self, scenario_listing, empty_prefs):
        geocoder = FakeGeocoder(default=AUSTIN)
        out = _engine(geocoder=geocoder).evaluate_payload(_body(scenario_listing, empty_prefs))

        assert geocoder.calls == [scenario_listing["address"]]
        assert out["coordinates"] == {"lat": AUSTIN.lat, "lon": AUSTIN.lon}
        assert out["diagnostics"]["geocode"]["status"] == "resolved"
        assert out["environment"]["soundLabel"] == "Good"

    def test_preschool_target(self, scenario_listing):
        places = FakePlaces({"preschool": [PRESCHOOL]})
        matrix = FakeMatrix({PRESCHOOL.location: 1.3 * METERS_PER_MILE})
        prefs = {"placeTargets": [{"label": "preschool", "maxDistanceMiles": 10}]}

        out = _engine(places=places, distance_matrix=matrix).evaluate_payload(
            _body(_with_coords(scenario_listing), prefs)
        )

        target = out["scoredTargets"][0]
        assert target["label"] == "preschool"
        assert target["distanceMiles"] == 1.3
        assert target["score"] == 10
        assert target["places"][0]["name"] == "Little Oaks"
        assert out["diagnostics"]["subScores"]["targetsPersonalized"] == 10.0
        assert out["diagnostics"]["providers"]["target:preschool"]["status"] == "success"
        assert out["personalizedScore"] == 66
        assert "preschool: excellent (1.3 mi)." in out["recap"]

    def test_golf_course_not_found(self, scenario_listing):
        prefs = {"placeTargets": [
            {"label": "preschool", "maxDistanceMiles": 10},
            {"label": "golf course", "maxDistanceMiles": 10},
        ]}
        places = FakePlaces({"preschool": [PRESCHOOL]})
        matrix = FakeMatrix({PRESCHOOL.location: 1.3 * METERS_PER_MILE})

        out = _engine(places=places, distance_matrix=matrix).evaluate_payload(
            _body(_with_coords(scenario_listing), prefs)
        )

        golf = out["scoredTargets"][1]
        assert golf["places"] == []
        assert golf["distanceMiles"] is None
        assert golf["score"] == 2
        assert out["diagnostics"]["subScores"]["coverageModifier"] == 0.925
        assert "No nearby golf course found." in out["recap"]

    def test_listing_supplied_distance_reused(self, scenario_listing):
        listing = dict(scenario_listing, targets=[
            {"label": "Preschool", "maxDistanceMiles": 5, "distanceMiles": 0.8},
        ])
        places = FakePlaces()
        prefs = {"placeTargets": [{"label": "preschool", "maxDistanceMiles": 10}]}

        out = _engine(places=places).evaluate_payload(_body(_with_coords(listing), prefs))

        assert places.calls == []
        assert out["scoredTargets"][0]["distanceMiles"] == 0.8
        assert out["scoredTargets"][0]["maxDistanceMiles"] == 10
        assert out["diagnostics"]["providers"]["target:preschool"]["status"] == "skipped"

    def test_generated_recap(self, scenario_listing, empty_prefs):
        engine = _engine(text_generation=FakeText("Roomy and close to school."))
        out = engine.evaluate_payload(_body(_with_coords(scenario_listing), empty_prefs))
        assert out["recap"] == "Roomy and close to school."
        assert out["diagnostics"]["recap"] == {"source": "generated", "error": None}

    def test_repeated_label_resolved_once(self, scenario_listing):
        places = FakePlaces({"gym": [PRESCHOOL], "Gym": [PRESCHOOL]})
        prefs = {"placeTargets": [
            {"label": "gym", "maxDistanceMiles": 5},
            {"label": "Gym", "maxDistanceMiles": 1},
        ]}

        out = _engine(places=places).evaluate_payload(_body(_with_coords(scenario_listing), prefs))

        assert places.calls == ["gym"]
        assert [t["label"] for t in out["scoredTargets"]] == ["gym"]
        assert [k for k in out["diagnostics"]["providers"] if k.startswith("target:")] == ["target:gym"]

    def test_sky_brightness_in_diagnostics(self, scenario_listing, empty_prefs):
        engine = _engine(night_sky=FakeNightSky(4.0, sqm=20.85))
        out = engine.evaluate_payload(_body(_with_coords(scenario_listing), empty_prefs))
        assert out["diagnostics"]["signals"]["night_sky"] == {
            "raw": 4.0,
            "detail": "Bortle 4 · 20.85 mag/arcsec²",
        }


# =========================================================================
# Degradation
# =========================================================================

class TestDegradation:
    def test_geocode_failure_skips_location_stages(self, scenario_listing):
        sound = FakeSound()
        night = FakeNightSky()
        places = FakePlaces({"preschool": [PRESCHOOL]})
        engine = _engine(geocoder=FakeGeocoder(default=None), sound=sound, night_sky=night, places=places)
        prefs = {"placeTargets": [{"label": "preschool", "maxDistanceMiles": 10}]}

        out = engine.evaluate_payload(_body(scenario_listing, prefs))

        assert sound.calls == 0
        assert night.calls == 0
        assert places.calls == []
        assert out["coordinates"] is None
        assert out["basicScore"] == 85
        assert out["scoredTargets"][0]["distanceMiles"] is None
        providers = out["diagnostics"]["providers"]
        assert providers["geocoding"] == {
            "status": "failure",
            "error": "GeocodingExhausted",
            "detail": "no match after 3 attempts",
        }
        assert providers["sound"]["status"] == "skipped"
        assert providers["target:preschool"]["status"] == "skipped"
        assert out["diagnostics"]["geocode"]["status"] == "failed"

    def test_single_signal_failure_isolated(self, scenario_listing, empty_prefs):
        engine = _engine(sound=FakeSound(UpstreamUnavailable("howloud", "HTTP 500")))
        out = engine.evaluate_payload(_body(_with_coords(scenario_listing), empty_prefs))

        env = out["environment"]
        assert env["soundScore"] is None
        assert env["airScore"] == 90
        assert env["stargazeLabel"] == "Okay"
        providers = out["diagnostics"]["providers"]
        assert providers["sound"]["error"] == "UpstreamUnavailable"
        assert providers["air_quality"]["status"] == "success"
        assert out["diagnostics"]["outcome"] == "partial"

    def test_night_sky_blocked_and_unparseable(self, scenario_listing):
        night_sky = FallbackNightSkyProvider([
            FakeNightSky(UpstreamUnavailable("lightpollutionmap", "api HTTP 403"), name="night_sky_api"),
            FakeNightSky(None, name="night_sky_page"),
        ])
        prefs = {"environmentalPrefs": ["stargazeScore"]}

        out = _engine(night_sky=night_sky).evaluate_payload(_body(_with_coords(scenario_listing), prefs))

        assert out["environment"]["stargazeScore"] is None
        diag = out["diagnostics"]
        assert diag["providers"]["night_sky_api"]["status"] == "failure"
        assert diag["providers"]["night_sky_page"]["status"] == "failure"
        assert diag["providers"]["night_sky"]["status"] == "failure"
        assert diag["subScores"]["environmentPersonalized"] is None
        assert "environment" not in diag["weights"]
        assert out["isPersonalized"] is True

    def test_target_failure_recorded_absent(self, scenario_listing):
        prefs = {"placeTargets": [{"label": "gym", "maxDistanceMiles": 3}]}
        places = FakePlaces({"gym": [PRESCHOOL]})
        matrix = FakeMatrix(error=UpstreamUnavailable("mapbox", "HTTP 429"))

        out = _engine(places=places, distance_matrix=matrix).evaluate_payload(
            _body(_with_coords(scenario_listing), prefs)
        )

        assert out["scoredTargets"][0]["distanceMiles"] is None
        assert out["diagnostics"]["providers"]["target:gym"]["status"] == "failure"

    def test_slow_provider_times_out(self, scenario_listing, empty_prefs):
        gate = threading.Event()

        class SlowSound(FakeSound):
            def sound_score(self, location):
                gate.wait(5)
                return 80.0

        engine = FitEngine(EngineConfig(stage_timeout_s=0.2), providers=make_providers(sound=SlowSound()))
        try:
            out = engine.evaluate_payload(_body(_with_coords(scenario_listing), empty_prefs))
        finally:
            gate.set()

        assert out["environment"]["soundScore"] is None
        assert out["diagnostics"]["providers"]["sound"]["detail"] == "timed out after 0.2s"
        assert out["environment"]["airScore"] == 90


class TestConcurrentFanOut:
    def test_every_target_runs_at_once(self, scenario_listing):
        labels = [f"t{i}" for i in range(10)]
        barrier = threading.Barrier(len(labels), timeout=5)

        class RendezvousPlaces(FakePlaces):
            def search(self, query, near, limit):
                # Breaks unless all ten searches are running together.
                barrier.wait()
                return super().search(query, near, limit)

        places = RendezvousPlaces({label: [PRESCHOOL] for label in labels})
        matrix = FakeMatrix({PRESCHOOL.location: 1.0 * METERS_PER_MILE})
        prefs = {"placeTargets": [{"label": label, "maxDistanceMiles": 5} for label in labels]}
        engine = FitEngine(
            EngineConfig(stage_timeout_s=10),
            providers=make_providers(places=places, distance_matrix=matrix),
        )

        out = engine.evaluate_payload(_body(_with_coords(scenario_listing), prefs))

        providers = out["diagnostics"]["providers"]
        assert {providers[f"target:{label}"]["status"] for label in labels} == {"success"}
        assert len(out["scoredTargets"]) == 10

    def test_worker_ceiling_still_completes(self, scenario_listing, caplog):
        prefs = {"placeTargets": [{"label": "gym", "maxDistanceMiles": 5}]}
        engine = FitEngine(EngineConfig(max_workers=2), providers=make_providers())

        with caplog.at_level("WARNING", logger="fit_engine"):
            out = engine.evaluate_payload(_body(_with_coords(scenario_listing), prefs))

        assert "exceed FIT_MAX_WORKERS=2" in caplog.text
        assert out["environment"]["soundScore"] == 72.0
        assert out["diagnostics"]["providers"]["target:gym"]["status"] == "success"


# =========================================================================
# Determinism and cancellation
# =========================================================================

class TestDeterminism:
    def test_identical_runs(self, scenario_listing):
        prefs = {
            "placeTargets": [
                {"label": "preschool", "maxDistanceMiles": 10},
                {"label": "golf course", "maxDistanceMiles": 15},
            ],
            "mobilitySignals": ["walk"],
            "environmentalPrefs": ["soundScore", "airQuality", "stargazeScore"],
            "notes": "Near grandparents",
        }
        body = _body(scenario_listing, prefs)

        def run():
            places = FakePlaces({"preschool": [PRESCHOOL]})
            matrix = FakeMatrix({PRESCHOOL.location: 1.3 * METERS_PER_MILE})
            return _engine(places=places, distance_matrix=matrix).evaluate_payload(body)

        first, second = run(), run()
        assert json.dumps(first, sort_keys=True) == json.dumps(second, sort_keys=True)


class TestCancellation:
    def test_cancelled_before_start(self, scenario_listing, empty_prefs):
        event = threading.Event()
        event.set()
        sound = FakeSound()
        with pytest.raises(EvaluationCancelled):
            _engine(sound=sound).evaluate_payload(_body(scenario_listing, empty_prefs), cancel_event=event)
        assert sound.calls == 0

    def test_cancelled_during_fan_out(self, scenario_listing, empty_prefs):
        event = threading.Event()

        class CancellingSound(FakeSound):
            def sound_score(self, location):
                event.set()
                return 70.0

        engine = _engine(sound=CancellingSound())
        with pytest.raises(EvaluationCancelled):
            engine.evaluate(parse_request(_body(_with_coords(scenario_listing), empty_prefs)), cancel_event=event)

    def test_cancel_aborts_in_flight_call(self, scenario_listing, empty_prefs):
        event = threading.Event()
        aborted = threading.Event()

        class InFlightSound(FakeSound):
            def sound_score(self, location):
                get_trace().add_abort_hook(aborted.set)
                event.set()  # the caller cancels while this call is running
                if not aborted.wait(5):
                    return 70.0
                raise EvaluationCancelled("sound call aborted")

        engine = _engine(sound=InFlightSound())
        with pytest.raises(EvaluationCancelled):
            engine.evaluate(parse_request(_body(_with_coords(scenario_listing), empty_prefs)), cancel_event=event)
        assert aborted.is_set()


# =========================================================================
# Wiring and CLI
# =========================================================================

class TestBuildProviders:
    def test_production_wiring(self):
        providers = build_providers(EngineConfig(google_maps_api_key="g", request_timeout_s=4))
        assert isinstance(providers.geocoder, GoogleMapsClient)
        assert providers.places is providers.geocoder
        assert isinstance(providers.distance_matrix, MapboxClient)
        assert providers.routing is providers.distance_matrix
        assert isinstance(providers.sound, HowLoudClient)
        assert isinstance(providers.night_sky, FallbackNightSkyProvider)
        assert [p.name for p in providers.night_sky.providers] == ["night_sky_api", "night_sky_page"]
        assert isinstance(providers.text_generation, OpenAIRecapClient)
        assert providers.geocoder.http.timeout == 4


class TestCli:
    def test_prints_result(self, tmp_path, capsys, scenario_listing, empty_prefs):
        path = tmp_path / "request.json"
        path.write_text(json.dumps(_body(_with_coords(scenario_listing), empty_prefs)))

        with patch("fit_engine.build_providers", return_value=make_providers()):
            assert main([str(path)]) == 0

        out = json.loads(capsys.readouterr().out)
        assert out["basicScore"] == 85

    def test_invalid_request_exit_code(self, tmp_path, capsys):
        path = tmp_path / "request.json"
        path.write_text(json.dumps({"listing": {"address": "x"}}))

        with patch("fit_engine.build_providers", return_value=make_providers()):
            assert main([str(path)]) == 2
        assert "prefs is required" in capsys.readouterr().err

    def test_unreadable_file(self, tmp_path):
        assert main([str(tmp_path / "missing.json")]) == 2

    def test_evaluate_payload_validates(self):
        with pytest.raises(InputValidationError):
            _engine().evaluate_payload({"prefs": {}})
