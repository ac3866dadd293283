from __future__ import annotations

import random


def backoff_delay(
    attempt: int,
    *,
    base_seconds: float,
    max_seconds: float,
    jitter: float = 0.2,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay for the given 1-based attempt, capped, with +/- jitter."""
    attempt = min(max(1, int(attempt)), 32)
    delay = min(float(max_seconds), float(base_seconds) * (2 ** (attempt - 1)))
    if jitter > 0 and delay > 0:
        spread = delay * jitter
        delay += (rng or random).uniform(-spread, spread)
    return max(0.0, min(delay, float(max_seconds)))
