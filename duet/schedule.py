"""
Dormancy schedule evaluation.

Everything here is a pure function of a wall-clock instant and a ScheduleConfig:
no clock reads, no state, safe to call from any task.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta

from .protocol import ScheduleConfig


ANNOUNCE_WINDOW_MS = 5 * 60 * 1000


def has_dormant_window(config: ScheduleConfig) -> bool:
    # start == end is an empty [start, end) window.
    return config.dormant_start_hour != config.dormant_end_hour


def tick_interval_ms(config: ScheduleConfig) -> int:
    return int(config.tick_interval_ms)


def is_dormant(now: datetime, config: ScheduleConfig) -> bool:
    start = config.dormant_start_hour
    end = config.dormant_end_hour
    if start == end:
        return False
    hour = now.hour
    if start < end:
        return start <= hour < end
    # Window crosses midnight, e.g. 22:00 - 06:00.
    return hour >= start or hour < end


def _ms_until_next(now: datetime, hour: int) -> int:
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    # Round up: a timer armed with this delay must not fire before the boundary.
    return math.ceil((target - now) / timedelta(milliseconds=1))


def ms_until_dormancy_start(now: datetime, config: ScheduleConfig) -> int:
    if is_dormant(now, config):
        return 0
    return _ms_until_next(now, config.dormant_start_hour)


def ms_until_dormancy_end(now: datetime, config: ScheduleConfig) -> int:
    if not is_dormant(now, config):
        return 0
    return _ms_until_next(now, config.dormant_end_hour)


def should_announce_dormancy_start(
    now: datetime,
    config: ScheduleConfig,
    *,
    window_ms: int = ANNOUNCE_WINDOW_MS,
) -> bool:
    if not has_dormant_window(config):
        return False
    remaining = ms_until_dormancy_start(now, config)
    return 0 < remaining <= int(window_ms)
