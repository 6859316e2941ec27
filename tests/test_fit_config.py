"""Tests for fit_config.py — environment loading."""

from unittest.mock import patch

from fit_config import EngineConfig


class TestFromEnv:
    def test_reads_credentials_and_tuning(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "g-key")
        monkeypatch.setenv("OPENAI_TIMEOUT_MS", "4500")
        monkeypatch.setenv("FIT_CANDIDATE_POOL", "15")
        monkeypatch.setenv("FIT_STAGE_TIMEOUT", "12.5")

        with patch("fit_config.load_dotenv"):
            config = EngineConfig.from_env()

        assert config.google_maps_api_key == "g-key"
        assert config.openai_timeout_s == 4.5
        assert config.candidate_pool == 15
        assert config.stage_timeout_s == 12.5

    def test_bad_numbers_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv("FIT_MAX_WORKERS", "many")
        monkeypatch.setenv("FIT_REQUEST_TIMEOUT", "")

        with patch("fit_config.load_dotenv"):
            config = EngineConfig.from_env()

        assert config.max_workers == 64
        assert config.request_timeout_s == 10.0

    def test_loads_dotenv(self):
        with patch("fit_config.load_dotenv") as mock_load:
            EngineConfig.from_env("/tmp/custom.env")
        mock_load.assert_called_once_with("/tmp/custom.env")


class TestMissingKeys:
    def test_lists_env_names(self):
        config = EngineConfig(google_maps_api_key="g", openai_api_key="sk")
        assert config.missing_keys() == [
            "MAPBOX_ACCESS_TOKEN",
            "OPENWEATHER_API_KEY",
            "HOWLOUD_API_KEY",
            "HOWLOUD_CLIENT_ID",
        ]
