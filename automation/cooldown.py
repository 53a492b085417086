"""Persisted "last performed" markers gating recurring side effects."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def to_epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def parse_marker(value) -> Optional[datetime]:
    """Read a marker stored as epoch ms or as an ISO-8601 string."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return from_epoch_ms(int(value))
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CooldownGate:
    def __init__(self, store, path: str, threshold: timedelta):
        self.store = store
        self.path = path
        self.threshold = threshold

    def last(self) -> Optional[datetime]:
        return parse_marker(self.store.get(self.path))

    def remaining(self, now: datetime) -> timedelta:
        """Time left before the gate opens; zero or negative means open."""
        last = self.last()
        if last is None:
            return timedelta(0)
        return last + self.threshold - now

    def is_open(self, now: datetime) -> bool:
        return self.remaining(now) <= timedelta(0)

    def next_due(self, now: datetime) -> datetime:
        last = self.last()
        return now if last is None else last + self.threshold

    def mark(self, now: datetime) -> None:
        self.store.set(self.path, to_epoch_ms(now))
