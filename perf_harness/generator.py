"""
Synthetic payment-intent request factory.

Each virtual-user iteration gets a fresh :class:`RequestRecord`: a
reservation id tied to the user and iteration, a random amount, a random
scenario and webhook target, and an idempotency key unique to the
attempt.  Records are discarded as soon as the call completes.

Key Concepts Demonstrated:
- Collision-free identity generation using timestamp + random suffix
- Enumerated choice sets with uniform random selection
- Seedable ``random.Random`` instances for reproducible test runs
"""

from __future__ import annotations

import random
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

AMOUNT_MIN = 10_000
AMOUNT_MAX = 109_999

_KEY_ALPHABET = string.ascii_lowercase + string.digits
_KEY_SUFFIX_LENGTH = 9


class Scenario(str, Enum):
    """Outcome the payment simulator is asked to produce."""

    APPROVE = "approve"
    FAIL = "fail"
    DELAY = "delay"
    RANDOM = "random"


class WebhookTarget(str, Enum):
    """Callback addresses the simulator may be told to notify."""

    HTTPBIN = "http://httpbin.org/post"
    WEBHOOK_SITE = "https://webhook.site/test"
    LOCAL_MOCK = "http://localhost:8081/webhook"


@dataclass(frozen=True)
class RequestRecord:
    """One synthetic payment-intent request."""

    reservation_id: str
    amount: int
    scenario: Scenario
    webhook_url: WebhookTarget
    idempotency_key: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        """Return the JSON body sent to the intent endpoint."""
        return {
            "reservation_id": self.reservation_id,
            "amount": self.amount,
            "scenario": self.scenario.value,
            "webhook_url": self.webhook_url.value,
            "metadata": dict(self.metadata),
        }

    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Idempotency-Key": self.idempotency_key,
        }


class RequestGenerator:
    """
    Builds request records for one virtual user.

    Args:
        seed: Optional seed for the underlying ``random.Random``.  Give
            each actor its own generator (and its own seed) so that runs
            are reproducible and no random state is shared between
            threads.
    """

    def __init__(self, seed: int | None = None):
        self._rng = random.Random(seed)

    def choose_scenario(self) -> Scenario:
        return self._rng.choice(list(Scenario))

    def choose_webhook(self) -> WebhookTarget:
        return self._rng.choice(list(WebhookTarget))

    def amount(self) -> int:
        return self._rng.randint(AMOUNT_MIN, AMOUNT_MAX)

    def idempotency_key(self, now: datetime) -> str:
        """
        Generate an idempotency key unique to a single attempt.

        Combines a millisecond timestamp with a nine-character random
        base-36 suffix, so two keys collide only if they are generated in
        the same millisecond *and* draw the same 36**9 suffix.
        """
        suffix = "".join(self._rng.choices(_KEY_ALPHABET, k=_KEY_SUFFIX_LENGTH))
        return f"test-{_epoch_ms(now)}-{suffix}"

    def build(self, actor_index: int, iteration: int, now: datetime | None = None) -> RequestRecord:
        """
        Build the request for one iteration of one virtual user.

        Args:
            actor_index: Index of the virtual user (starting at 1).
            iteration: Zero-based iteration counter of that user.
            now: Wall-clock time of the iteration; defaults to the
                current UTC time.

        Returns:
            A fully-populated :class:`RequestRecord`.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        return RequestRecord(
            reservation_id=f"rsv_{_epoch_ms(now)}_{actor_index}_{iteration}",
            amount=self.amount(),
            scenario=self.choose_scenario(),
            webhook_url=self.choose_webhook(),
            idempotency_key=self.idempotency_key(now),
            metadata={
                "test_run": True,
                "vu": actor_index,
                "iteration": iteration,
                "timestamp": now.isoformat(),
            },
        )


def _epoch_ms(now: datetime) -> int:
    return int(now.timestamp() * 1000)
