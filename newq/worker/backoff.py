"""
Retry backoff policies.

A policy maps the number of attempts a job has used to the delay, in
milliseconds, before it becomes visible again.
"""

from collections.abc import Callable

from newq.constants import BACKOFF_BASE_MS, BACKOFF_MAX_MS

BackoffPolicy = Callable[[int], int]


def clamp(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, value))


def exponential_backoff(
    base_ms: int = BACKOFF_BASE_MS,
    max_ms: int = BACKOFF_MAX_MS,
) -> BackoffPolicy:
    """
    Build an exponential policy: ``base_ms * 2 ** (attempts - 1)``, capped.

    Args:
        base_ms: Delay after the first attempt.
        max_ms: Upper bound on any delay.

    Returns:
        The backoff policy.
    """

    def delay(attempts: int) -> int:
        if attempts < 1:
            return clamp(base_ms // 2, 0, max_ms)
        # max_ms caps the result long before this exponent
        exponent = min(attempts - 1, 62)
        return clamp(base_ms * 2**exponent, 0, max_ms)

    return delay


default_backoff: BackoffPolicy = exponential_backoff()
