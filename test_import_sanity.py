"""Import sanity tests.

These lightweight tests verify that the WSGI entrypoint and core modules
can be imported without errors — the minimum bar for a deploy.
"""

import pytest


def test_app_module_imports():
    """The Flask app module must import without errors."""
    import app  # noqa: F401


def test_wsgi_app_object():
    """Gunicorn's 'app:app' entrypoint must resolve to a Flask instance."""
    from app import app as flask_app
    assert flask_app is not None
    assert hasattr(flask_app, "route"), "app object is not a Flask instance"


def test_fit_engine_imports():
    """Core symbols used by app.py must be importable."""
    from fit_engine import FitEngine, build_providers
    from models import parse_request, result_to_dict
    assert FitEngine is not None
    assert build_providers is not None
    assert parse_request is not None
    assert result_to_dict is not None


def test_night_sky_imports():
    """The scrape fallback needs BeautifulSoup at import time."""
    from night_sky import FallbackNightSkyProvider, parse_bortle_page
    assert FallbackNightSkyProvider is not None
    assert parse_bortle_page is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
