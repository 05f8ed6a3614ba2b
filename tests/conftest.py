from __future__ import annotations

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import pytest


HEALTH_UP = {
    "status": "UP",
    "components": {
        "db": {"status": "UP", "details": {"database": "PostgreSQL"}},
        "diskSpace": {"status": "UP"},
    },
}
HEALTH_DOWN = {
    "status": "DOWN",
    "components": {"db": {"status": "DOWN", "details": {"error": "connection refused"}}},
}
INFO_FULL = {
    "build": {"version": "1.4.2", "time": "2024-03-01T10:15:00Z", "artifact": "orders"},
    "git": {"branch": "main", "commit": {"id": "abc1234"}},
}
STREAMS_FULL = {
    "state": "RUNNING",
    "threads": 4,
    "topics": ["orders", "payments"],
    "partitions": 12,
}

# path -> (status, body, delay_seconds); dict/list bodies are sent as JSON, str as text/plain.
ROUTES: dict[str, tuple[int, Any, float]] = {
    "/up/actuator/health": (200, HEALTH_UP, 0.0),
    "/up/actuator/info": (200, INFO_FULL, 0.0),
    "/up/actuator/kafkastreams": (200, STREAMS_FULL, 0.0),
    "/down/actuator/health": (503, HEALTH_DOWN, 0.0),
    "/down/actuator/info": (200, {"build": {"version": "0.9.0"}}, 0.0),
    "/oos/actuator/health": (200, {"status": "OUT_OF_SERVICE"}, 0.0),
    "/html/actuator/health": (200, "<html><body>It works</body></html>", 0.0),
    "/list/actuator/health": (200, ["UP"], 0.0),
    "/bare/actuator/health": (200, {"status": "UP"}, 0.0),
    "/bare/actuator/info": (200, {}, 0.0),
    "/bare/actuator/kafkastreams": (500, {"error": "boom"}, 0.0),
    "/partial/actuator/health": (200, {"status": "UP"}, 0.0),
    "/partial/actuator/info": (200, {"git": {"branch": "release/2.0"}}, 0.0),
    "/partial/actuator/kafkastreams": (200, {"state": "REBALANCING"}, 0.0),
    "/slow/actuator/health": (200, HEALTH_UP, 1.5),
    "/slow/actuator/info": (200, INFO_FULL, 1.5),
    "/slow/actuator/kafkastreams": (200, STREAMS_FULL, 1.5),
}

# path -> seconds between body bytes; headers go out at once, the JSON body trickles in.
DRIP_ROUTES: dict[str, float] = {
    "/drip/actuator/health": 0.1,
    "/drip/actuator/info": 0.1,
    "/drip/actuator/kafkastreams": 0.1,
}


class _ActuatorHandler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        if self.path in DRIP_ROUTES:
            self._drip(DRIP_ROUTES[self.path])
            return
        status, body, delay = ROUTES.get(self.path, (404, "Not Found", 0.0))
        if delay:
            time.sleep(delay)
        if isinstance(body, (dict, list)):
            body_bytes = json.dumps(body).encode("utf-8")
            content_type = "application/json"
        else:
            body_bytes = str(body).encode("utf-8")
            content_type = "text/plain; charset=utf-8"
        try:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body_bytes)))
            self.end_headers()
            self.wfile.write(body_bytes)
        except (BrokenPipeError, ConnectionResetError):
            # Client gave up (timeout tests).
            return

    def _drip(self, interval: float) -> None:
        body_bytes = json.dumps(HEALTH_UP).encode("utf-8")
        try:
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body_bytes)))
            self.end_headers()
            for i in range(len(body_bytes)):
                self.wfile.write(body_bytes[i : i + 1])
                self.wfile.flush()
                time.sleep(interval)
        except (BrokenPipeError, ConnectionResetError):
            return


@pytest.fixture(scope="session")
def actuator_base_url() -> str:
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _ActuatorHandler)
    httpd.daemon_threads = True
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture
def unreachable_base_url() -> str:
    # Port 1 on loopback refuses connections.
    return "http://127.0.0.1:1"
