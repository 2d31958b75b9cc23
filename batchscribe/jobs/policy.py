"""Retry backoff and poll jitter."""

import random
from typing import Optional


def backoff_delay(step: int, base: float, cap: float) -> float:
    """Delay before retry number `step` (1-based): base * 2**(step-1), capped."""
    return min(base * (2 ** (step - 1)), cap)


def jittered(interval: float, jitter: float, rng: Optional[random.Random] = None) -> float:
    """Spread `interval` uniformly over ±jitter (a fraction) of itself."""
    rng = rng or random
    return interval * rng.uniform(1.0 - jitter, 1.0 + jitter)
