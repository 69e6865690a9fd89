from __future__ import annotations

import random


def compute_retry_delay(
    attempt: int,
    *,
    base_seconds: float,
    max_seconds: float,
    jitter_ratio: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay for the ``attempt``-th retry (1-based), with capped jitter."""
    if base_seconds <= 0:
        return 0.0
    exponent = min(max(0, attempt - 1), 62)
    cap = max(0.0, max_seconds)
    delay = min(base_seconds * (2**exponent), cap)
    if jitter_ratio > 0 and delay > 0:
        uniform = rng.uniform if rng is not None else random.uniform
        delay += uniform(0.0, delay * jitter_ratio)
    return min(delay, cap)
