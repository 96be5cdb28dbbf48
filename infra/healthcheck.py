"""HTTP liveness endpoint for the risk monitor (container platforms poll /health)."""

from __future__ import annotations

import json
import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

BANNER = b"Trading Risk Management Bot is Active\n"
HEALTH_PATHS = ("/health", "/healthz")

StatusProvider = Callable[[], Dict[str, Any]]


class _MonitorHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, status_provider: StatusProvider):
        super().__init__(address, _HealthRequestHandler)
        self.status_provider = status_provider
        self.started_at = time.monotonic()


class _HealthRequestHandler(BaseHTTPRequestHandler):
    server: _MonitorHTTPServer

    def do_GET(self):  # type: ignore[override]
        path = self.path.split("?", 1)[0]
        if path not in HEALTH_PATHS:
            self._reply(200, "text/plain", BANNER)
            return

        try:
            payload = dict(self.server.status_provider() or {})
        except Exception as exc:
            logger.error("Health status provider failed: %s", exc, exc_info=True)
            payload = {"status": "ERROR", "ok": False, "issues": [f"status provider failed: {exc}"]}
            code = 500
        else:
            code = 200 if payload.get("ok", True) else 503
        payload.setdefault("uptime_seconds", round(time.monotonic() - self.server.started_at, 1))

        self._reply(code, "application/json", json.dumps(payload, default=str).encode("utf-8"))

    def _reply(self, code: int, content_type: str, body: bytes) -> None:
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - polled every few seconds
        return


class HealthServer:
    """
    Background health endpoint.

    GET /health (or /healthz) returns the provider payload, 503 when it reports
    ``ok: false`` and 500 when the provider itself raises. Any other path
    returns a plain-text banner.
    """

    def __init__(self, port: int, status_provider: StatusProvider, host: str = "0.0.0.0"):
        self._address = (host, int(port))
        self._status_provider = status_provider
        self._server: Optional[_MonitorHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        return self._server.server_port if self._server else None

    def start(self) -> None:
        """Bind and serve in a daemon thread. Raises OSError if the port is taken."""
        if self._server is not None:
            return
        self._server = _MonitorHTTPServer(self._address, self._status_provider)
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health check available at http://%s:%s/health", self._address[0], self.port)

    def stop(self) -> None:
        server, thread = self._server, self._thread
        self._server = self._thread = None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=3)
        logger.info("Health server stopped")


__all__ = ["HealthServer", "BANNER"]
