"""
Delay specs for dispatched calls.

A delay spec is one of:
  None / ""       no delay
  5, 2.5, "5"     literal seconds
  "random"        uniform in [0, max_random_delay), for load smoothing
  "${some.prop}"  placeholder resolved against configuration at dispatch
                  time, which may itself resolve to a number or "random"

Resolved delays are clamped to the transport maximum rather than rejected.
"""
from __future__ import annotations

import random
from typing import Callable, Optional, Union

from core.exceptions import ConfigurationError

MAX_DELAY_SECONDS = 900     # 15 minutes, the longest per-message delay the queue supports
RANDOM_DELAY = "random"

DelaySpec = Optional[Union[int, float, str]]


def clamp_delay(seconds: float) -> int:
    return int(min(max(seconds, 0), MAX_DELAY_SECONDS))


class DelayResolver:
    """Turns a DelaySpec into whole seconds."""

    def __init__(
        self,
        max_random_delay: int = MAX_DELAY_SECONDS,
        resolve_placeholders: Callable[[str], str] = None,
        rng: random.Random = None,
    ):
        self.max_random_delay = max_random_delay
        self._resolve_placeholders = resolve_placeholders
        self._rng = rng or random.Random()

    def resolve(self, spec: DelaySpec) -> int:
        if spec is None or isinstance(spec, bool):
            return 0

        if isinstance(spec, (int, float)):
            return clamp_delay(spec)

        text = spec.strip()
        if not text:
            return 0

        if "${" in text and self._resolve_placeholders is not None:
            text = self._resolve_placeholders(text).strip()
            if not text:
                return 0

        if text == RANDOM_DELAY:
            return clamp_delay(self._rng.randrange(self.max_random_delay))

        try:
            return clamp_delay(float(text))
        except ValueError:
            raise ConfigurationError(f"Invalid delay '{spec}' (resolved to '{text}')") from None
