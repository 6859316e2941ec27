"""Tests for smoke_test.py — the post-deploy checks, with fetch mocked."""

import json
from unittest.mock import patch

import smoke_test


def _responses(mapping):
    """Fake fetch answering by (method, path)."""
    def fake_fetch(url, payload=None):
        method = "POST" if payload is not None else "GET"
        path = url.split("127.0.0.1", 1)[-1]
        return mapping[(method, path)]
    return fake_fetch


HEALTHY = {
    ("GET", "/healthz"): (200, json.dumps({"status": "ok", "missing_keys": []}), {}),
    ("POST", "/api/fit"): (
        400, json.dumps({"error": "prefs is required", "request_id": "abc"}), {"X-Request-ID": "abc"},
    ),
    ("GET", "/api/fit"): (405, "", {}),
}


class TestRunTests:
    def test_all_pass(self):
        with patch("smoke_test.fetch", side_effect=_responses(HEALTHY)), \
                patch("smoke_test.send_webhook_alert") as alert:
            assert smoke_test.run_tests("http://127.0.0.1") is True
        alert.assert_not_called()

    def test_degraded_health_still_passes(self):
        responses = dict(HEALTHY)
        responses[("GET", "/healthz")] = (
            503, json.dumps({"status": "degraded", "missing_keys": ["HOWLOUD_API_KEY"]}), {},
        )
        with patch("smoke_test.fetch", side_effect=_responses(responses)):
            assert smoke_test.run_tests("http://127.0.0.1") is True

    def test_fit_route_missing_fails_and_alerts(self):
        responses = dict(HEALTHY)
        responses[("POST", "/api/fit")] = (404, "<html>Not Found</html>", {})
        with patch("smoke_test.fetch", side_effect=_responses(responses)), \
                patch("smoke_test.send_webhook_alert") as alert:
            assert smoke_test.run_tests("http://127.0.0.1") is False
        failures = alert.call_args[0][0]
        assert any("fit validation" in f for f in failures)

    def test_malformed_health_body_fails(self):
        responses = dict(HEALTHY)
        responses[("GET", "/healthz")] = (200, "ok", {})
        with patch("smoke_test.fetch", side_effect=_responses(responses)), \
                patch("smoke_test.send_webhook_alert"):
            assert smoke_test.run_tests("http://127.0.0.1") is False


class TestHelpers:
    def test_missing_keys(self):
        assert smoke_test.missing_keys({"status": "ok"}, ["status", "missing_keys"]) == ["missing_keys"]
        assert smoke_test.missing_keys(None, ["status"]) == ["status"]

    def test_parse_json(self):
        assert smoke_test.parse_json('{"a": 1}') == {"a": 1}
        assert smoke_test.parse_json("[1]") is None
        assert smoke_test.parse_json("nope") is None

    def test_webhook_skipped_without_url(self, monkeypatch):
        monkeypatch.delenv("SMOKE_ALERT_WEBHOOK", raising=False)
        with patch("urllib.request.urlopen") as urlopen:
            smoke_test.send_webhook_alert(["x"])
        urlopen.assert_not_called()
