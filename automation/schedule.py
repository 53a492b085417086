"""Weekly schedule intervals and active-interval resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Tuple
from zoneinfo import ZoneInfo

from .const import DAY_NAMES, FAN_MAX, FAN_MIN, POWER_MAX, POWER_MIN

_LOGGER = logging.getLogger(__name__)


def parse_hhmm(value: str) -> int:
    """Convert "HH:MM" to minutes after midnight."""
    hours, minutes = str(value).strip().split(":")
    h, m = int(hours), int(minutes)
    if not (0 <= h <= 24 and 0 <= m < 60) or h * 60 + m > 24 * 60:
        raise ValueError(f"invalid time of day: {value!r}")
    return h * 60 + m


@dataclass(frozen=True)
class Interval:
    start: str
    end: str
    power: int
    fan: int

    @property
    def label(self) -> str:
        return f"{self.start}-{self.end}"

    @property
    def start_minutes(self) -> int:
        return parse_hhmm(self.start)

    @property
    def end_minutes(self) -> int:
        return parse_hhmm(self.end)

    def contains(self, minutes: int) -> bool:
        return self.start_minutes <= minutes < self.end_minutes

    @classmethod
    def from_dict(cls, data: dict) -> "Interval":
        interval = cls(
            start=str(data["start"]),
            end=str(data["end"]),
            power=int(data["power"]),
            fan=int(data["fan"]),
        )
        if interval.start_minutes >= interval.end_minutes:
            raise ValueError(f"interval {interval.label} must end after it starts")
        if not POWER_MIN <= interval.power <= POWER_MAX:
            raise ValueError(f"power {interval.power} out of range")
        if not FAN_MIN <= interval.fan <= FAN_MAX:
            raise ValueError(f"fan {interval.fan} out of range")
        return interval

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end, "power": self.power, "fan": self.fan}


def parse_intervals(raw: Any) -> list:
    """Parse a stored day list into Intervals, skipping malformed entries.

    The store may hand back a list or, after a partial update, a mapping keyed
    by list index.
    """
    if raw is None:
        return []
    if isinstance(raw, dict):
        items: Iterable = (raw[k] for k in sorted(raw, key=lambda k: int(k) if str(k).isdigit() else 0))
    else:
        items = raw
    intervals = []
    for item in items:
        try:
            intervals.append(Interval.from_dict(item))
        except (KeyError, TypeError, ValueError) as err:
            _LOGGER.warning("Ignoring malformed schedule interval %r: %s", item, err)
    return intervals


def local_clock(now: datetime, tz: ZoneInfo) -> Tuple[str, str, int]:
    """Return (day name, "HH:MM", minutes after midnight) for now in tz."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    return DAY_NAMES[local.weekday()], local.strftime("%H:%M"), local.hour * 60 + local.minute


def resolve_active_interval(intervals: Iterable[Interval], now: datetime, tz: ZoneInfo) -> Optional[Interval]:
    """Return the first interval containing now, or None.

    Intervals never span midnight. Overlapping intervals are a configuration
    error; the first match in list order wins.
    """
    _, _, minutes = local_clock(now, tz)
    matches = [interval for interval in intervals if interval.contains(minutes)]
    if len(matches) > 1:
        _LOGGER.warning(
            "Overlapping schedule intervals %s, using %s",
            ", ".join(m.label for m in matches),
            matches[0].label,
        )
    return matches[0] if matches else None
