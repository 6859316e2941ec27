"""Shared fixtures for the listing fit engine test suite.

Provider credentials are blanked so nothing can reach a real API, and the
thread-local trace is cleared between tests.
"""

import os

import pytest

# Blank credentials BEFORE importing app (it builds its engine at import time)
for _name in (
    "GOOGLE_MAPS_API_KEY",
    "MAPBOX_ACCESS_TOKEN",
    "OPENWEATHER_API_KEY",
    "HOWLOUD_API_KEY",
    "HOWLOUD_CLIENT_ID",
    "OPENAI_API_KEY",
    "SENTRY_DSN",
):
    os.environ[_name] = ""

from fit_trace import clear_trace  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_trace():
    clear_trace()
    yield
    clear_trace()


@pytest.fixture()
def scenario_listing():
    """The reference listing: basics 10, schools 8, walk 78."""
    return {
        "address": "123 Oak Ln, Austin, TX 78701",
        "basics": {"beds": 4, "baths": 2, "sqft": 2200, "yearBuilt": 2015},
        "schools": [{"label": "Elem", "score": 8}],
        "mobility": {"walk": 78},
    }


@pytest.fixture()
def empty_prefs():
    return {"placeTargets": [], "mobilitySignals": [], "environmentalPrefs": []}


@pytest.fixture()
def client():
    """Flask test client."""
    from app import app

    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c
