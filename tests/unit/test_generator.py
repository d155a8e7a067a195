"""
Unit tests for synthetic request generation.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

import pytest

from perf_harness.generator import (
    AMOUNT_MAX,
    AMOUNT_MIN,
    RequestGenerator,
    Scenario,
    WebhookTarget,
)

pytestmark = pytest.mark.unit

FIXED_NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_build_populates_every_field():
    """Test that a record carries ids, amount, scenario, webhook and metadata."""
    # Arrange
    generator = RequestGenerator(seed=7)

    # Act
    record = generator.build(actor_index=3, iteration=12, now=FIXED_NOW)

    # Assert
    epoch_ms = int(FIXED_NOW.timestamp() * 1000)
    assert record.reservation_id == f"rsv_{epoch_ms}_3_12"
    assert AMOUNT_MIN <= record.amount <= AMOUNT_MAX
    assert isinstance(record.scenario, Scenario)
    assert isinstance(record.webhook_url, WebhookTarget)
    assert re.fullmatch(rf"test-{epoch_ms}-[a-z0-9]{{9}}", record.idempotency_key)
    assert record.metadata == {
        "test_run": True,
        "vu": 3,
        "iteration": 12,
        "timestamp": FIXED_NOW.isoformat(),
    }


def test_payload_and_headers_match_endpoint_contract():
    """Test the JSON body keys and the Idempotency-Key header."""
    # Arrange
    record = RequestGenerator(seed=1).build(1, 0, now=FIXED_NOW)

    # Act
    payload = record.payload()
    headers = record.headers()

    # Assert
    assert set(payload) == {"reservation_id", "amount", "scenario", "webhook_url", "metadata"}
    assert payload["scenario"] in {scenario.value for scenario in Scenario}
    assert payload["webhook_url"] in {target.value for target in WebhookTarget}
    assert headers["Idempotency-Key"] == record.idempotency_key
    assert headers["Content-Type"] == "application/json"


def test_seeded_generators_are_reproducible():
    """Test that the same seed yields the same random choices."""
    first = RequestGenerator(seed=99).build(1, 0, now=FIXED_NOW)
    second = RequestGenerator(seed=99).build(1, 0, now=FIXED_NOW)

    assert first == second


def test_choices_cover_every_enumerated_value():
    """Test that uniform selection eventually hits every scenario and webhook target."""
    # Arrange
    generator = RequestGenerator(seed=5)

    # Act
    records = [generator.build(1, i, now=FIXED_NOW) for i in range(500)]

    # Assert
    assert {record.scenario for record in records} == set(Scenario)
    assert {record.webhook_url for record in records} == set(WebhookTarget)
    assert min(record.amount for record in records) >= AMOUNT_MIN
    assert max(record.amount for record in records) <= AMOUNT_MAX


def test_idempotency_keys_are_unique_across_many_records():
    """Test that 10,000+ records generated in the same millisecond never share a key."""
    # Arrange -- worst case: many actors, identical timestamp
    generators = [RequestGenerator(seed=actor) for actor in range(1, 11)]

    # Act
    keys = [
        generator.build(actor, iteration, now=FIXED_NOW).idempotency_key
        for actor, generator in enumerate(generators, start=1)
        for iteration in range(1_200)
    ]

    # Assert
    assert len(keys) == 12_000
    assert len(set(keys)) == len(keys)


def test_reservation_ids_are_unique_per_actor_and_iteration():
    """Test that reservation ids differ across actors and iterations at the same instant."""
    generator = RequestGenerator()

    ids = {generator.build(actor, iteration, now=FIXED_NOW).reservation_id
           for actor in range(1, 21) for iteration in range(50)}

    assert len(ids) == 1_000
