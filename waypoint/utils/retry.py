from __future__ import annotations

import random


def compute_backoff(
    attempt: int, base: float = 2.0, jitter: float = 0.5, scale: float = 1.0
) -> float:
    """Exponential backoff with jitter, in units of ``scale`` seconds.

    ``attempt`` counts from zero, so the first retry waits roughly ``scale``.
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return scale * (base**attempt + random.uniform(0, jitter))
