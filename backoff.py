#!/usr/bin/env python3
"""
Adaptive refresh scheduling.

A feed that keeps returning nothing new is polled less often: the interval
doubles per consecutive unchanged refresh up to a ceiling, and each interval
is jittered so feeds sharing the same streak do not poll in lockstep.
"""

import secrets
from datetime import datetime, timedelta

from config import config, get_logger

logger = get_logger("backoff")

RANDOM_FALLBACK = 0.5
RANDOM_BIT_FALLBACK = 1

_rng = secrets.SystemRandom()


def base_interval() -> timedelta:
    return timedelta(minutes=config.REFRESH_INTERVAL_MINUTES)


def backoff_ceiling() -> timedelta:
    return timedelta(hours=config.REFRESH_BACKOFF_MAX_HOURS)


def _random_fraction() -> float:
    """Uniform float in [0, 1) from the OS CSPRNG, or 0.5 if it is unavailable."""
    try:
        return _rng.random()
    except (OSError, NotImplementedError) as e:
        logger.warning(f"System randomness unavailable, using fallback fraction: {e}")
        return RANDOM_FALLBACK


def _random_bit() -> int:
    try:
        return _rng.getrandbits(1)
    except (OSError, NotImplementedError) as e:
        logger.warning(f"System randomness unavailable, using fallback sign: {e}")
        return RANDOM_BIT_FALLBACK


def compute_backoff_interval(unchanged_count: int) -> timedelta:
    """Return ``min(base * 2**max(unchanged_count, 0), ceiling)``.

    Doubles iteratively and stops at the ceiling so large streaks never build
    huge intermediate values.
    """
    ceiling = backoff_ceiling()
    interval = base_interval()
    for _ in range(max(int(unchanged_count), 0)):
        interval *= 2
        if interval >= ceiling:
            return ceiling
    return min(interval, ceiling)


def apply_jitter(interval: timedelta) -> timedelta:
    """Scale an interval by ``1 + r`` or ``1 - r`` with ``r`` drawn from the jitter band.

    Non-positive intervals are returned unchanged.
    """
    if interval <= timedelta(0):
        return interval

    jitter_min = config.REFRESH_JITTER_MIN
    jitter_max = config.REFRESH_JITTER_MAX
    magnitude = jitter_min + _random_fraction() * (jitter_max - jitter_min)
    if _random_bit() == 0:
        magnitude = -magnitude

    return interval * (1 + magnitude)


def next_refresh_at(checked_at: datetime, unchanged_count: int) -> datetime:
    """Compute when a feed checked at ``checked_at`` should next be refreshed."""
    interval = min(apply_jitter(compute_backoff_interval(unchanged_count)), backoff_ceiling())
    return checked_at + interval
