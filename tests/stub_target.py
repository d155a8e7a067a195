"""
Flask stand-in for the payment simulator API.

Serves just enough of the real contract for end-to-end harness tests:

- ``GET /healthz``: 200, or 503 when ``healthy=False``
- ``POST /v1/sim/intent``: behaviour selected by ``mode``:

  * ``"ok"``: 200 with ``payment_intent_id``, ``status`` and
    ``next == "webhook"``
  * ``"error"``: 500 with a JSON error body
  * ``"malformed"``: 200 with a body missing the required fields
  * ``"slow"``: sleeps ``delay`` seconds, then behaves like ``"ok"``

Every received ``Idempotency-Key`` is kept so tests can assert on what
the harness actually sent.
"""

from __future__ import annotations

import threading
import time
import uuid
from typing import Any

from flask import Flask, jsonify, request


class StubState:
    """Thread-safe record of requests the stub received."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.idempotency_keys: list[str] = []
        self.payloads: list[dict[str, Any]] = []

    def add(self, key: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.idempotency_keys.append(key)
            self.payloads.append(payload)

    @property
    def request_count(self) -> int:
        with self._lock:
            return len(self.payloads)


def create_stub_app(mode: str = "ok", *, healthy: bool = True, delay: float = 0.0) -> Flask:
    """
    Build a stub payment simulator.

    Args:
        mode: ``"ok"``, ``"error"``, ``"malformed"`` or ``"slow"``.
        healthy: Whether ``/healthz`` answers 200.
        delay: Seconds the ``"slow"`` mode waits before answering.

    Returns:
        A Flask app with a ``stub_state`` attribute.
    """
    app = Flask(__name__)
    state = StubState()
    app.stub_state = state  # type: ignore[attr-defined]

    @app.get("/healthz")
    def healthz():
        if not healthy:
            return jsonify({"status": "unhealthy"}), 503
        return jsonify({"status": "ok"}), 200

    @app.post("/v1/sim/intent")
    def create_intent():
        payload = request.get_json(silent=True) or {}
        state.add(request.headers.get("Idempotency-Key", ""), payload)

        if mode == "error":
            return jsonify({"error": {"code": "INTERNAL", "message": "boom"}}), 500
        if mode == "malformed":
            return jsonify({"unexpected": True}), 200
        if mode == "slow":
            time.sleep(delay)

        return (
            jsonify(
                {
                    "payment_intent_id": f"pi_{uuid.uuid4().hex[:12]}",
                    "status": "PENDING",
                    "next": "webhook",
                }
            ),
            200,
        )

    return app
