"""
Unit tests for response checks.
"""

from __future__ import annotations

import pytest

from perf_harness.checks import CallResult, default_checks, run_checks, safe_json

pytestmark = pytest.mark.unit

GOOD_BODY = {"payment_intent_id": "pi_1", "status": "PENDING", "next": "webhook"}


class _FakeResponse:
    def __init__(self, payload=None, raises=False):
        self._payload = payload
        self._raises = raises

    def json(self):
        if self._raises:
            raise ValueError("not json")
        return self._payload


def test_default_check_names_follow_reporting_order():
    """Test the fixed check set and its names."""
    checks = default_checks(latency_ceiling_ms=500)

    assert [check.name for check in checks] == [
        "status is 200",
        "response time < 500ms",
        "has payment_intent_id",
        "has status",
        "has next",
        "next is webhook",
    ]


def test_all_checks_pass_for_good_response():
    """Test that a fast 200 with every field passes every check."""
    # Arrange
    result = CallResult(status_code=200, elapsed_ms=42.0, body=GOOD_BODY)

    # Act
    outcome = run_checks(default_checks(latency_ceiling_ms=500), result)

    # Assert
    assert all(outcome.values())


@pytest.mark.parametrize(
    ("result", "failing"),
    [
        (CallResult(status_code=500, elapsed_ms=5.0, body=GOOD_BODY), {"status is 200"}),
        (CallResult(status_code=200, elapsed_ms=500.0, body=GOOD_BODY), {"response time < 500ms"}),
        (
            CallResult(status_code=200, elapsed_ms=5.0, body={"status": "x", "next": "webhook"}),
            {"has payment_intent_id"},
        ),
        (
            CallResult(status_code=200, elapsed_ms=5.0, body={**GOOD_BODY, "next": "poll"}),
            {"next is webhook"},
        ),
    ],
)
def test_each_check_fails_independently(result, failing):
    """Test that each check flags only its own expectation."""
    outcome = run_checks(default_checks(latency_ceiling_ms=500), result)

    assert {name for name, ok in outcome.items() if not ok} == failing


def test_timeout_result_fails_every_check():
    """Test that a transport failure (status 0, empty body) fails all checks except latency."""
    result = CallResult(status_code=0, elapsed_ms=10.0, error="timeout")

    outcome = run_checks(default_checks(latency_ceiling_ms=500), result)

    assert result.transport_failed
    assert result.http_failed
    assert [name for name, ok in outcome.items() if ok] == ["response time < 500ms"]


@pytest.mark.parametrize(("status", "failed"), [(200, False), (302, False), (404, True), (503, True), (0, True)])
def test_http_failed_mirrors_status_classes(status, failed):
    """Test that only 4xx/5xx and missing responses count as HTTP failures."""
    assert CallResult(status_code=status, elapsed_ms=1.0).http_failed is failed


def test_safe_json_handles_bad_bodies():
    """Test that unparsable or non-object bodies become an empty dict."""
    assert safe_json(_FakeResponse(raises=True)) == {}
    assert safe_json(_FakeResponse(payload=[1, 2])) == {}
    assert safe_json(_FakeResponse(payload={"a": 1})) == {"a": 1}
