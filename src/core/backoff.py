"""Restart backoff policy for supervised collectors."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

# Exponent clamp; the cap is reached long before this.
_MAX_EXPONENT = 64


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with a cap, jitter and a success reset.

    Delays within one failure streak never decrease: jitter is applied on top
    of the exponential base and the result is clamped between the previous
    delay and the cap.
    """

    floor: float = 1.0
    cap: float = 600.0
    multiplier: float = 2.0
    jitter: float = 0.1
    reset_after: float = 300.0

    def base_delay(self, failures: int) -> float:
        """Delay for the n-th consecutive failure, without jitter."""

        exponent = min(max(failures - 1, 0), _MAX_EXPONENT)
        return min(self.cap, self.floor * self.multiplier**exponent)

    def next_delay(
        self,
        failures: int,
        previous: float = 0.0,
        rng: Optional[random.Random] = None,
    ) -> float:
        """Return the delay before the next restart attempt."""

        delay = self.base_delay(failures)
        if self.jitter > 0:
            delay += delay * (rng or random).uniform(0.0, self.jitter)
        return min(self.cap, max(previous, delay))

    def should_reset(self, ran_for: float) -> bool:
        """True when a run lasted long enough to forget earlier failures."""

        return ran_for >= self.reset_after
