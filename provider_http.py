"""
Shared HTTP layer for every external provider call.

All provider HTTP requests in the engine go through ProviderHTTPClient.
It provides:
- A bounded timeout on every call
- Thread-safe request execution (fresh requests.Session per call)
- A cancellation check before any request is sent, and an abort hook
  that shuts down the call's sockets if the request is cancelled while
  the call is in flight
- fit_trace integration for observability
- One error type for every failure mode: a timeout, a connection error,
  an HTTP error status and an unparseable body all raise
  UpstreamUnavailable, so callers degrade the same way for each

There are no retries here.  Each provider is attempted once per request;
the only fallback chains (geocoding, night sky) are explicit strategies
built on top of this layer.
"""

import logging
import socket
import threading
import time
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from fit_trace import get_trace
from models import EvaluationCancelled, UpstreamUnavailable

logger = logging.getLogger(__name__)

# Socket tracker of the call running on this thread.
_call_local = threading.local()


# =============================================================================
# ABORTABLE TRANSPORT
# =============================================================================

class _CallSockets:
    """Sockets opened by one provider call, shut down together on abort."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sockets: List[socket.socket] = []
        self.aborted = False

    def add(self, sock: socket.socket):
        with self._lock:
            if not self.aborted:
                self._sockets.append(sock)
                return
        _shutdown(sock)

    def abort(self):
        with self._lock:
            self.aborted = True
            sockets, self._sockets = self._sockets, []
        for sock in sockets:
            _shutdown(sock)


def _shutdown(sock: socket.socket):
    # shutdown() wakes a thread blocked in recv(); close() alone does not.
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        logger.debug("socket already closed: %s", e)


def _track(sock):
    tracker = getattr(_call_local, "sockets", None)
    if tracker is not None and sock is not None:
        tracker.add(sock)


class _TrackedHTTPConnection(HTTPConnection):
    def connect(self):
        super().connect()
        _track(self.sock)


class _TrackedHTTPSConnection(HTTPSConnection):
    def connect(self):
        super().connect()
        _track(self.sock)


class _TrackedHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = _TrackedHTTPConnection


class _TrackedHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = _TrackedHTTPSConnection


class AbortableAdapter(HTTPAdapter):
    """HTTPAdapter whose connections report their sockets to the current call."""

    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _TrackedHTTPConnectionPool,
            "https": _TrackedHTTPSConnectionPool,
        }


# =============================================================================
# CLIENT
# =============================================================================

class ProviderHTTPClient:
    DEFAULT_TIMEOUT = 10  # seconds

    def __init__(self, service: str, timeout: Optional[float] = None, user_agent: str = ""):
        self.service = service
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.user_agent = user_agent

    def get_json(
        self,
        endpoint: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """GET *url* and return the decoded JSON body."""
        resp, elapsed_ms = self._get(endpoint, url, params, headers)
        try:
            data = resp.json()
        except ValueError:
            self._record(endpoint, elapsed_ms, resp.status_code, "parse_error")
            raise UpstreamUnavailable(
                self.service, f"non-JSON response from {endpoint} (HTTP {resp.status_code})",
            )
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        self._record(endpoint, elapsed_ms, resp.status_code, str(provider_status or "OK"))
        return data

    def get_text(
        self,
        endpoint: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        """GET *url* and return the body as text (for rendered pages)."""
        resp, elapsed_ms = self._get(endpoint, url, params, headers)
        self._record(endpoint, elapsed_ms, resp.status_code, "OK")
        return resp.text

    def _get(self, endpoint, url, params, headers):
        trace = get_trace()
        if trace:
            trace.check_cancelled()

        request_headers = dict(headers or {})
        if self.user_agent:
            request_headers.setdefault("User-Agent", self.user_agent)

        tracker = _CallSockets()
        if trace:
            trace.add_abort_hook(tracker.abort)
        _call_local.sockets = tracker

        # Fresh session per request (thread-safe, no shared state)
        start = time.monotonic()
        try:
            with requests.Session() as session:
                session.trust_env = False
                session.mount("http://", AbortableAdapter())
                session.mount("https://", AbortableAdapter())
                resp = session.get(
                    url, params=params, headers=request_headers, timeout=self.timeout,
                )
        except requests.RequestException as e:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            if tracker.aborted:
                self._record(endpoint, elapsed_ms, 0, "cancelled")
                raise EvaluationCancelled(f"{self.service} {endpoint} aborted by cancellation")
            if isinstance(e, requests.Timeout):
                self._record(endpoint, elapsed_ms, 0, "timeout")
                raise UpstreamUnavailable(self.service, f"{endpoint} timed out after {self.timeout}s")
            self._record(endpoint, elapsed_ms, 0, "request_error")
            raise UpstreamUnavailable(self.service, f"{endpoint} request failed: {type(e).__name__}")
        finally:
            _call_local.sockets = None
            if trace:
                trace.remove_abort_hook(tracker.abort)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if resp.status_code >= 400:
            self._record(endpoint, elapsed_ms, resp.status_code, "http_error")
            raise UpstreamUnavailable(self.service, f"{endpoint} HTTP {resp.status_code}")
        return resp, elapsed_ms

    def _record(self, endpoint: str, elapsed_ms: int, status_code: int, provider_status: str):
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service=self.service,
                endpoint=endpoint,
                elapsed_ms=elapsed_ms,
                status_code=status_code,
                provider_status=provider_status,
            )
        if provider_status not in ("OK", "ZERO_RESULTS"):
            logger.warning(
                "%s %s failed: http=%d provider=%s (%dms)",
                self.service, endpoint, status_code, provider_status, elapsed_ms,
            )
