"""Epoch-millisecond helpers.  All store timestamps are epoch ms."""

from __future__ import annotations

import time
from datetime import datetime
from zoneinfo import ZoneInfo

QUEUE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def now_ms() -> int:
    return int(time.time() * 1000)


def start_of_today_ms(tz_name: str, now: int | None = None) -> int:
    """Local midnight of the day containing *now* (default: current time)."""
    tz = ZoneInfo(tz_name)
    current = datetime.fromtimestamp((now if now is not None else now_ms()) / 1000, tz)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)


def local_date(tz_name: str, ms: int | None = None) -> str:
    """``yyyy-MM-dd`` in the configured timezone."""
    moment = datetime.fromtimestamp((ms if ms is not None else now_ms()) / 1000, ZoneInfo(tz_name))
    return moment.strftime("%Y-%m-%d")


def parse_local_datetime(text: str, tz_name: str) -> int | None:
    """Parse ``yyyy-MM-dd HH:mm:ss`` as local time; ``None`` when it does not match."""
    try:
        parsed = datetime.strptime(text.strip(), QUEUE_DATE_FORMAT)
    except ValueError:
        return None
    return int(parsed.replace(tzinfo=ZoneInfo(tz_name)).timestamp() * 1000)


def format_local_datetime(ms: int, tz_name: str) -> str:
    return datetime.fromtimestamp(ms / 1000, ZoneInfo(tz_name)).strftime(QUEUE_DATE_FORMAT)
