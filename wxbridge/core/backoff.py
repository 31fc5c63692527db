"""Exponential reconnect backoff shared by both session links."""

DEFAULT_BASE_DELAY: float = 2.0
DEFAULT_MAX_DELAY: float = 30.0


def compute_delay(
    attempt: int,
    base: float = DEFAULT_BASE_DELAY,
    maximum: float = DEFAULT_MAX_DELAY,
) -> float:
    """Return ``min(base * 2**attempt, maximum)`` seconds.

    ``attempt`` starts at 1 for the first retry. No jitter is applied so the
    schedule is reproducible.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    delay: float = base * (2**attempt)
    return min(delay, maximum)
