"""
Shared pytest fixtures for the load-test harness suite.

Key Concepts Demonstrated:
- Live server fixture: a real Flask stub served from a background
  thread, so the harness exercises genuine HTTP, timeouts and threading
- Factory fixtures for registries, actor settings and stub targets
- Deterministic seeds for reproducible payload generation
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Generator
from dataclasses import dataclass

import pytest
from flask import Flask
from werkzeug.serving import make_server

# Set testing environment before importing the harness
os.environ["PERF_ENV"] = "testing"

from perf_harness.actor import ActorSettings, declare_metrics
from perf_harness.checks import default_checks
from perf_harness.metrics import MetricRegistry
from tests.stub_target import StubState, create_stub_app


# -----------------------------------------------------------------------------
# Metric Fixtures
# -----------------------------------------------------------------------------

@pytest.fixture
def registry() -> MetricRegistry:
    """Provide a fresh registry with the standard metric set declared."""
    metrics = MetricRegistry()
    declare_metrics(metrics)
    return metrics


@pytest.fixture
def actor_settings() -> ActorSettings:
    """
    Provide actor settings pointing at a non-routable host.

    Tests that need a real target build their own settings from the
    ``stub_target`` fixture's URL.
    """
    return ActorSettings(
        target_url="http://payments.test/v1/sim/intent",
        think_time=0.0,
        request_timeout=1.0,
        checks=default_checks(latency_ceiling_ms=500),
    )


# -----------------------------------------------------------------------------
# Live Stub Target
# -----------------------------------------------------------------------------

@dataclass
class LiveStub:
    """Handle on a running stub: its base URL and what it received."""

    url: str
    state: StubState


def _serve(app: Flask) -> Generator[LiveStub, None, None]:
    server = make_server("127.0.0.1", 0, app, threaded=True)
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()
    try:
        yield LiveStub(url=f"http://127.0.0.1:{server.server_port}", state=app.stub_state)
    finally:
        server.shutdown()
        server_thread.join(timeout=5)


@pytest.fixture
def stub_target() -> Generator[Callable[..., LiveStub], None, None]:
    """
    Factory fixture that starts stub payment simulators on free ports.

    Example:
        def test_something(stub_target):
            stub = stub_target("error")
            run = create_run(base_url=stub.url)
    """
    servers: list[Generator[LiveStub, None, None]] = []

    def _start(mode: str = "ok", **options) -> LiveStub:
        server = _serve(create_stub_app(mode, **options))
        servers.append(server)
        return next(server)

    yield _start

    for server in servers:
        server.close()
