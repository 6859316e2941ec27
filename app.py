import os
import logging
import uuid

from flask import Flask, request, jsonify, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from fit_config import EngineConfig
from fit_engine import FitEngine
from models import InputValidationError, UpstreamUnavailable, parse_request, result_to_dict

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # A provider was down or slow; the result already degraded around it
            if exc_type is not None and issubclass(exc_type, UpstreamUnavailable):
                sentry_sdk.add_breadcrumb(
                    category=getattr(exc_value, "provider", "upstream"),
                    message=msg,
                    level="warning",
                )
                return None
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(
                    category="http",
                    message=msg,
                    level="warning",
                )
                return None
            # Malformed request bodies are the caller's problem
            if exc_type is InputValidationError:
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RAILWAY_GIT_COMMIT_SHA"),
        environment=os.environ.get("RAILWAY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)

# Proxy fix: most PaaS hosts run behind a reverse proxy that sets
# X-Forwarded-For.  ProxyFix rewrites request.remote_addr to the real
# client IP so both Flask-Limiter and logging see the correct address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: every evaluation fans out to paid provider APIs.
# In-memory storage is per-process; upgrade to Redis if precision is needed.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_FIT = os.environ.get("RATE_LIMIT_FIT", "30/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

# ---------------------------------------------------------------------------
# Engine: one instance, read-only config shared by every request
# ---------------------------------------------------------------------------
ENGINE_CONFIG = EngineConfig.from_env()
engine = FitEngine(ENGINE_CONFIG)

# Startup: warn immediately if provider credentials are missing
_missing_at_start = ENGINE_CONFIG.missing_keys()
if _missing_at_start:
    logger.warning(
        "Provider credentials not set: %s. "
        "The affected signals will be reported as failures until configured. "
        "For local development, copy .env.example to .env and add your keys.",
        ", ".join(_missing_at_start),
    )


# ---------------------------------------------------------------------------
# Request ID middleware: every request gets a unique ID for tracing
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "")
    return response


@app.errorhandler(InputValidationError)
def _invalid_request(e):
    request_id = getattr(g, "request_id", "unknown")
    logger.info("[%s] Rejected request: %s", request_id, e)
    return jsonify({"error": str(e), "request_id": request_id}), 400


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.route("/api/fit", methods=["POST"])
@limiter.limit(RATE_LIMIT_FIT)
def fit():
    """Score one listing against one set of preferences."""
    request_id = g.request_id
    body = request.get_json(silent=True)
    if body is None:
        return jsonify({"error": "Request body must be a JSON object", "request_id": request_id}), 400

    fit_request = parse_request(body)
    logger.info(
        "[%s] Fit request: address=%r targets=%d",
        request_id, fit_request.listing.address, len(fit_request.prefs.place_targets),
    )
    result = engine.evaluate(fit_request, trace_id=request_id)
    logger.info(
        "[%s] Fit done: basic=%d personalized=%d outcome=%s",
        request_id, result.basic_score, result.personalized_score,
        result.diagnostics.get("outcome"),
    )
    return jsonify(result_to_dict(result))


def _check_service_config():
    """Return (ok, missing_keys) for the provider credentials."""
    missing = ENGINE_CONFIG.missing_keys()
    return not missing, missing


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    app.run(host="0.0.0.0", port=port, debug=os.environ.get("FLASK_DEBUG") == "1")
