"""
Response checks applied to every payment-intent call.

A check is a named predicate over a :class:`CallResult`.  An iteration
counts as successful only when every check passes; the per-check
outcomes are also recorded individually so the report can show which
expectation the target missed.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

EXPECTED_STATUS = 200
REQUIRED_FIELDS = ("payment_intent_id", "status", "next")
EXPECTED_NEXT = "webhook"


@dataclass(frozen=True)
class CallResult:
    """
    What one HTTP call produced.

    Attributes:
        status_code: HTTP status, or ``0`` when no response arrived
            (timeout, refused connection).
        elapsed_ms: Wall time of the call in milliseconds.
        body: Parsed JSON object body, ``{}`` when absent or not an object.
        text: Raw response text, kept for failure logging.
        error: Transport error description when no response arrived.
    """

    status_code: int
    elapsed_ms: float
    body: dict[str, Any] = field(default_factory=dict)
    text: str = ""
    error: str | None = None

    @property
    def transport_failed(self) -> bool:
        return self.status_code == 0

    @property
    def http_failed(self) -> bool:
        """Mirror k6's ``http_req_failed``: no response, or a 4xx/5xx status."""
        return self.status_code == 0 or self.status_code >= 400


@dataclass(frozen=True)
class Check:
    name: str
    predicate: Callable[[CallResult], bool]

    def __call__(self, result: CallResult) -> bool:
        return bool(self.predicate(result))


def safe_json(response: Any) -> dict[str, Any]:
    """
    Return response JSON as dict, or an empty dict if parsing fails.

    Error responses from the target (5xx pages, proxy timeouts) often
    carry non-JSON bodies; a parse failure must become a failed check,
    never an exception inside the virtual user loop.

    Args:
        response: A ``requests.Response`` (or anything with ``.json()``).

    Returns:
        The parsed JSON body as a dictionary, or ``{}`` if parsing fails
        or the top-level value is not a dict.
    """
    try:
        data = response.json()
    except ValueError:
        return {}

    if isinstance(data, dict):
        return data
    return {}


def default_checks(
    *,
    latency_ceiling_ms: float,
    expected_status: int = EXPECTED_STATUS,
    required_fields: Iterable[str] = REQUIRED_FIELDS,
    expected_next: str = EXPECTED_NEXT,
) -> tuple[Check, ...]:
    """
    Build the fixed check set for the payment-intent endpoint.

    Args:
        latency_ceiling_ms: Calls at or above this many milliseconds fail
            the latency check.
        expected_status: HTTP status a successful call returns.
        required_fields: Keys the JSON body must contain.
        expected_next: Required value of the body's ``next`` field.

    Returns:
        The checks in reporting order.
    """
    checks = [
        Check(f"status is {expected_status}", lambda r: r.status_code == expected_status),
        Check(
            f"response time < {latency_ceiling_ms:g}ms",
            lambda r: r.elapsed_ms < latency_ceiling_ms,
        ),
    ]
    for field_name in required_fields:
        checks.append(Check(f"has {field_name}", _has_field(field_name)))
    checks.append(Check(f"next is {expected_next}", lambda r: r.body.get("next") == expected_next))
    return tuple(checks)


def _has_field(field_name: str) -> Callable[[CallResult], bool]:
    return lambda result: field_name in result.body


def run_checks(checks: Sequence[Check], result: CallResult) -> dict[str, bool]:
    """Evaluate every check against ``result``, keyed by check name."""
    return {check.name: check(result) for check in checks}
