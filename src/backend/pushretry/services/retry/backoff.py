"""Exponential backoff with pluggable jitter.

Pure functions: no I/O and no shared state beyond the random source.
"""

import random

from pushretry.services.retry.types import JitterType, RetryConfig

_rng = random.Random()


def base_delay(attempt: int, config: RetryConfig) -> float:
    """Un-jittered delay in seconds for a 1-indexed retry attempt."""
    if attempt < 1:
        raise ValueError(f"attempt is 1-indexed, got {attempt}")
    try:
        delay = config.initial_delay * config.backoff_factor ** (attempt - 1)
    except OverflowError:
        return config.max_delay
    return min(delay, config.max_delay)


def compute_delay(
    attempt: int,
    config: RetryConfig,
    previous_delay: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Delay in seconds before the given retry attempt.

    Args:
        attempt: 1-indexed retry number (the first retry uses ``attempt=1``)
        config: Retry configuration to compute against
        previous_delay: Delay computed for the same notification's previous
            attempt. Only decorrelated jitter uses it; when omitted the base
            delay stands in for it.
        rng: Random source, mainly for deterministic tests

    Returns:
        Delay clamped to ``[0, config.max_delay]``
    """
    rng = rng or _rng
    base = base_delay(attempt, config)
    jitter_type = config.jitter_type

    if jitter_type == JitterType.NONE:
        delay = base
    elif jitter_type == JitterType.FULL:
        delay = rng.uniform(0, base)
    elif jitter_type == JitterType.EQUAL:
        delay = base / 2 + rng.uniform(0, base / 2)
    elif jitter_type == JitterType.DECORRELATED:
        previous = base if previous_delay is None else previous_delay
        delay = rng.uniform(config.initial_delay, previous * 3)
    else:
        raise ValueError(f"Unknown jitter type: {jitter_type}")

    return min(max(delay, 0.0), config.max_delay)
