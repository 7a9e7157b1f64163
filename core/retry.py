"""RetryPolicy — retry budget, dead-letter escalation, backoff with jitter."""
from __future__ import annotations

import random

from models.schemas import Durability, Envelope, RetryDecision

MAX_RETRY_COUNT = 10
BACKOFF_BASE_SECONDS = 10

# 2**7 * 10 already exceeds the 900 s transport cap
_MAX_BACKOFF_EXPONENT = 32


def backoff_with_jitter(retry_count: int, max_delay: int, rng: random.Random = None) -> int:
    """
    Whole seconds to wait before the given retry.

    min(10 * 2^n, max_delay) scaled by a factor in [0.5, 1.0] so that many
    workers failing together do not retry in lockstep.
    """
    rng = rng or random
    exponent = max(0, min(retry_count, _MAX_BACKOFF_EXPONENT))
    ceiling = min(BACKOFF_BASE_SECONDS * (2 ** exponent), max_delay)
    return int(ceiling * (0.5 + 0.5 * rng.random()))


class RetryPolicy:
    """
    Decides what happens to an envelope whose handler failed.

    - Under the retry budget, or when reprocessing from the dead-letter
      queue: retry with backoff.
    - TRANSIENT over budget: discard.
    - JOURNAL over budget on the primary queue: escalate, so the transport
      dead-letters it. JOURNAL work is never silently dropped.
    """

    def __init__(self, max_retry_count: int = MAX_RETRY_COUNT, max_delay: int = 900,
                 rng: random.Random = None):
        self.max_retry_count = max_retry_count
        self.max_delay = max_delay
        self._rng = rng or random.Random()

    def backoff(self, retry_count: int) -> int:
        return backoff_with_jitter(retry_count, self.max_delay, self._rng)

    def on_failure(self, envelope: Envelope, from_dead_letter: bool = False) -> RetryDecision:
        if envelope.retry_count < self.max_retry_count or from_dead_letter:
            retry_envelope = envelope.next_retry()
            return RetryDecision.retry(retry_envelope, self.backoff(retry_envelope.retry_count))

        if envelope.durability == Durability.TRANSIENT:
            return RetryDecision.discard()

        return RetryDecision.escalate()
