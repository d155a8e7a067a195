"""Pre-run health check for the target service."""

from __future__ import annotations

import logging
import time
from urllib.parse import urljoin

import requests

from perf_harness.errors import SetupError

logger = logging.getLogger(__name__)


def build_url(base_url: str, path: str) -> str:
    """Join ``path`` onto ``base_url`` regardless of slashes on either side."""
    return urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


def check_health(base_url: str, path: str = "/healthz", timeout: float = 5) -> None:
    """
    Verify the target answers its health endpoint with HTTP 200.

    Args:
        base_url: Root URL of the target service.
        path: Health endpoint path.
        timeout: Seconds to wait for the response.

    Raises:
        SetupError: If the request fails or the status is not 200.
    """
    url = build_url(base_url, path)
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise SetupError(f"Health check failed: {url} unreachable ({exc})") from exc

    if response.status_code != 200:
        raise SetupError(f"Health check failed: {url} returned {response.status_code}")
    logger.info("Health check passed: %s", url)


def wait_for_healthy(
    base_url: str,
    path: str = "/healthz",
    timeout: float = 30,
    interval: float = 1,
) -> None:
    """
    Poll the health endpoint until it passes or ``timeout`` elapses.

    Useful when the harness starts alongside the target (docker compose,
    CI service containers).

    Raises:
        SetupError: If the target is still unhealthy at the deadline.
    """
    deadline = time.monotonic() + timeout
    last_error: SetupError | None = None
    while time.monotonic() < deadline:
        try:
            check_health(base_url, path, timeout=min(interval * 2, timeout))
            return
        except SetupError as exc:
            last_error = exc
        time.sleep(interval)
    raise SetupError(f"{base_url} not healthy after {timeout}s") from last_error
