"""
Configurable HTTP target for integration tests.

Serves a tiny Flask app on an ephemeral port in a background thread so
scenario tests can point a real run at it.  Every ``GET /api/...``
answers according to the current :class:`StubBehavior`: fixed status,
fixed added latency, and an optional seeded fraction of error answers.

Key Concepts Demonstrated:
- Live server fixture on a background thread
- Deterministic fault injection with a seeded random source
- Mutable behaviour shared safely between request threads
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Generator
from dataclasses import dataclass, field

from flask import Flask, Response, jsonify
from werkzeug.serving import make_server

logger = logging.getLogger(__name__)


@dataclass
class StubBehavior:
    """
    How the stub answers.

    Attributes:
        status: Status code for normal answers.
        latency_ms: Delay added before every answer.
        error_ratio: Fraction of answers replaced by ``error_status``.
        error_status: Status code used for injected errors.
        seed: Seed for the error-injection random source.
        requests: Number of `/api/...` requests answered so far, health
            checks excluded.
    """

    status: int = 200
    latency_ms: float = 0.0
    error_ratio: float = 0.0
    error_status: int = 500
    seed: int = 0
    requests: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _rng: random.Random | None = field(default=None, repr=False)

    def next_status(self) -> int:
        with self._lock:
            if self._rng is None:
                self._rng = random.Random(self.seed)
            self.requests += 1
            if self.error_ratio > 0 and self._rng.random() < self.error_ratio:
                return self.error_status
            return self.status


def create_stub_app(behavior: StubBehavior) -> Flask:
    """Build the stub Flask application."""
    app = Flask(__name__)

    @app.route("/api/health")
    def health() -> Response:
        return jsonify({"success": True, "status": "healthy"})

    @app.route("/api/<path:path>")
    def endpoint(path: str) -> tuple[Response, int]:
        status = behavior.next_status()
        if behavior.latency_ms > 0:
            time.sleep(behavior.latency_ms / 1000.0)
        return jsonify({"path": f"/api/{path}", "status": status}), status

    return app


class StubTarget:
    """Run the stub app with werkzeug on ``127.0.0.1`` and a free port."""

    def __init__(self, behavior: StubBehavior | None = None) -> None:
        self.behavior = behavior or StubBehavior()
        self._server = make_server(
            "127.0.0.1", 0, create_stub_app(self.behavior), threaded=True
        )
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="stub-target", daemon=True
        )

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self._server.server_port}"

    def start(self) -> StubTarget:
        self._thread.start()
        logger.info("Stub target listening on %s", self.url)
        return self

    def stop(self) -> None:
        self._server.shutdown()
        self._thread.join(timeout=5)


def running_stub_target(behavior: StubBehavior | None = None) -> Generator[StubTarget, None, None]:
    """Yield a started :class:`StubTarget` and shut it down afterwards."""
    # Request logging from werkzeug would flood the test output.
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    target = StubTarget(behavior).start()
    try:
        yield target
    finally:
        target.stop()
