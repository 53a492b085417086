"""Stove usage-hour tracking and the cleaning interlock."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from .const import DEFAULT_MAINTENANCE_TARGET_HOURS, MAINTENANCE_THRESHOLDS, PATH_MAINTENANCE
from .cooldown import parse_marker
from .stove_api import StoveState

_LOGGER = logging.getLogger(__name__)

MIN_TRACKING_MINUTES = 0.5


@dataclass(frozen=True)
class MaintenanceAlert:
    level: int
    percentage: float
    remaining_hours: float

    @property
    def message(self) -> str:
        if self.level >= 100:
            return "Manutenzione richiesta! L'accensione è bloccata fino alla pulizia."
        if self.level >= 90:
            return f"Solo {self.remaining_hours:.1f}h rimanenti prima della pulizia richiesta"
        return (f"{self.remaining_hours:.1f}h rimanenti prima della manutenzione "
                f"({self.percentage:.0f}%)")


@dataclass(frozen=True)
class TrackResult:
    tracked: bool
    reason: Optional[str] = None
    elapsed_minutes: float = 0.0
    current_hours: float = 0.0
    needs_cleaning: bool = False
    alert: Optional[MaintenanceAlert] = None


def default_record(now: datetime) -> Dict[str, Any]:
    return {
        "currentHours": 0.0,
        "targetHours": DEFAULT_MAINTENANCE_TARGET_HOURS,
        "lastCleanedAt": None,
        "needsCleaning": False,
        "lastUpdatedAt": now.isoformat(),
        "lastNotificationLevel": 0,
    }


def pending_alert(percentage: float, current_hours: float, target_hours: float,
                  last_level: int) -> Optional[MaintenanceAlert]:
    """Highest threshold crossed since the last alert, if any."""
    crossed = [t for t in MAINTENANCE_THRESHOLDS if percentage >= t and t > last_level]
    if not crossed:
        return None
    return MaintenanceAlert(
        level=max(crossed),
        percentage=percentage,
        remaining_hours=max(0.0, target_hours - current_hours),
    )


class MaintenanceTracker:
    # read-modify-write of the record is serialised within this process
    _lock = threading.Lock()

    def __init__(self, store):
        self.store = store

    def can_ignite(self) -> bool:
        data = self.store.get(PATH_MAINTENANCE) or {}
        return not data.get("needsCleaning", False)

    def track_usage(self, state: StoveState, now: datetime) -> TrackResult:
        if state is not StoveState.RUNNING:
            return TrackResult(tracked=False, reason="not_running")

        with self._lock:
            data = self.store.get(PATH_MAINTENANCE)
            if not data:
                self.store.set(PATH_MAINTENANCE, default_record(now))
                return TrackResult(tracked=False, reason="initialized")

            last_update = parse_marker(data.get("lastUpdatedAt"))
            if last_update is None:
                self.store.update(PATH_MAINTENANCE, {"lastUpdatedAt": now.isoformat()})
                return TrackResult(tracked=False, reason="initialized")

            elapsed_minutes = (now - last_update).total_seconds() / 60
            if elapsed_minutes < MIN_TRACKING_MINUTES:
                return TrackResult(tracked=False, reason="too_soon")

            target_hours = float(data.get("targetHours") or DEFAULT_MAINTENANCE_TARGET_HOURS)
            current_hours = float(data.get("currentHours") or 0.0) + elapsed_minutes / 60
            percentage = current_hours / target_hours * 100
            needs_cleaning = bool(data.get("needsCleaning")) or current_hours >= target_hours

            updates: Dict[str, Any] = {
                "currentHours": round(current_hours, 4),
                "lastUpdatedAt": now.isoformat(),
                "needsCleaning": needs_cleaning,
            }
            alert = pending_alert(percentage, current_hours, target_hours,
                                  int(data.get("lastNotificationLevel") or 0))
            if alert:
                updates["lastNotificationLevel"] = alert.level
            self.store.update(PATH_MAINTENANCE, updates)

        _LOGGER.info("Maintenance tracked: +%.1f min, %.2fh total", elapsed_minutes, current_hours)
        return TrackResult(
            tracked=True,
            elapsed_minutes=round(elapsed_minutes, 2),
            current_hours=round(current_hours, 4),
            needs_cleaning=needs_cleaning,
            alert=alert,
        )
