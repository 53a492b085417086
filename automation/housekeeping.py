"""Cooldown-gated side jobs launched by the scheduler check.

Each job reads its own marker, does nothing while the cooldown is running,
and rewrites the marker only after its work went through. None of them
raise: failures come back as a result with ``reason="exception"``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from mqtt_bridge import COMMAND_CALIBRATE

from .const import (
    CALIBRATION_INTERVAL,
    NOTIFICATION_ERROR_RETENTION,
    PATH_LAST_CALIBRATION,
    PATH_LAST_IGNITION_INTERVAL,
    PATH_LAST_TOKEN_CLEANUP,
    PATH_LAST_UNEXPECTED_OFF_NOTIFICATION,
    PATH_LAST_WEATHER_REFRESH,
    PATH_LAST_WORK_NOTIFICATION,
    PATH_LOCATION,
    PATH_NOTIFICATION_ERRORS,
    PATH_ROOM_STATUS,
    PATH_USERS,
    PATH_WEATHER_CACHE,
    STALE_TOKEN_AGE,
    TOKEN_CLEANUP_INTERVAL,
    UNEXPECTED_OFF_COOLDOWN,
    WEATHER_REFRESH_INTERVAL,
    WORK_NOTIFICATION_COOLDOWN,
)
from .cooldown import CooldownGate, parse_marker, to_epoch_ms
from .notifications import log_result
from .stove_api import StoveState

_LOGGER = logging.getLogger(__name__)


@dataclass
class JobResult:
    done: bool
    reason: Optional[str] = None
    next_run: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)


class Housekeeping:
    def __init__(self, store, notifier, admin_user_id=None, bridge=None, weather=None):
        self.store = store
        self.notifier = notifier
        self.admin_user_id = admin_user_id
        self.bridge = bridge
        self.weather = weather

    def _too_soon(self, gate: CooldownGate, now: datetime) -> Optional[JobResult]:
        if gate.is_open(now):
            return None
        return JobResult(done=False, reason="too_soon", next_run=gate.next_due(now))

    def calibrate_valves_if_needed(self, now: datetime) -> JobResult:
        gate = CooldownGate(self.store, PATH_LAST_CALIBRATION, CALIBRATION_INTERVAL)
        skipped = self._too_soon(gate, now)
        if skipped:
            return skipped
        try:
            if self.bridge is None:
                return JobResult(done=False, reason="no_bridge")
            rooms = (self.store.get(f"{PATH_ROOM_STATUS}/rooms") or {}).keys()
            if not rooms:
                return JobResult(done=False, reason="no_rooms")
            _LOGGER.info("Starting automatic valve calibration for %d rooms", len(rooms))
            for room_id in rooms:
                self.bridge.publish_command(room_id, COMMAND_CALIBRATE)
            gate.mark(now)
            return JobResult(done=True, next_run=now + CALIBRATION_INTERVAL,
                             details={"rooms": sorted(rooms)})
        except Exception as err:
            _LOGGER.exception("Automatic valve calibration failed")
            return JobResult(done=False, reason="exception", details={"error": str(err)})

    def refresh_weather_if_needed(self, now: datetime) -> JobResult:
        gate = CooldownGate(self.store, PATH_LAST_WEATHER_REFRESH, WEATHER_REFRESH_INTERVAL)
        skipped = self._too_soon(gate, now)
        if skipped:
            return skipped
        try:
            location = self.store.get(PATH_LOCATION) or {}
            latitude, longitude = location.get("latitude"), location.get("longitude")
            if latitude is None or longitude is None or self.weather is None:
                _LOGGER.warning("Weather refresh skipped: location not configured")
                return JobResult(done=False, reason="no_location")

            forecast = self.weather.forecast(latitude, longitude)
            self.store.set(PATH_WEATHER_CACHE, {
                "latitude": latitude,
                "longitude": longitude,
                "data": forecast,
                "cachedAt": to_epoch_ms(now),
            })
            gate.mark(now)
            _LOGGER.info("Weather refreshed for %s", location.get("name") or "unknown location")
            return JobResult(done=True, next_run=now + WEATHER_REFRESH_INTERVAL)
        except Exception as err:
            _LOGGER.exception("Weather refresh failed")
            return JobResult(done=False, reason="exception", details={"error": str(err)})

    def cleanup_tokens_if_needed(self, now: datetime) -> JobResult:
        gate = CooldownGate(self.store, PATH_LAST_TOKEN_CLEANUP, TOKEN_CLEANUP_INTERVAL)
        skipped = self._too_soon(gate, now)
        if skipped:
            return skipped
        try:
            scanned, token_updates = 0, {}
            for user_id, user in (self.store.get(PATH_USERS) or {}).items():
                tokens = user.get("fcmTokens") if isinstance(user, dict) else None
                for token_key, token in (tokens or {}).items():
                    scanned += 1
                    token = token if isinstance(token, dict) else {}
                    last_activity = parse_marker(token.get("lastUsed") or token.get("createdAt"))
                    if last_activity is None or now - last_activity > STALE_TOKEN_AGE:
                        token_updates[f"{user_id}/fcmTokens/{token_key}"] = None
            if token_updates:
                self.store.update(PATH_USERS, token_updates)

            error_updates = {}
            for key, entry in (self.store.get(PATH_NOTIFICATION_ERRORS) or {}).items():
                logged_at = parse_marker(entry.get("timestamp")) if isinstance(entry, dict) else None
                if logged_at is not None and now - logged_at > NOTIFICATION_ERROR_RETENTION:
                    error_updates[key] = None
            if error_updates:
                self.store.update(PATH_NOTIFICATION_ERRORS, error_updates)

            gate.mark(now)
            _LOGGER.info("Token cleanup: %d/%d tokens, %d errors removed",
                         len(token_updates), scanned, len(error_updates))
            return JobResult(done=True, next_run=now + TOKEN_CLEANUP_INTERVAL, details={
                "tokensScanned": scanned,
                "tokensRemoved": len(token_updates),
                "errorsRemoved": len(error_updates),
            })
        except Exception as err:
            _LOGGER.exception("Token cleanup failed")
            return JobResult(done=False, reason="exception", details={"error": str(err)})

    def notify_work_status(self, state: StoveState, now: datetime) -> JobResult:
        if not self.admin_user_id:
            return JobResult(done=False, reason="no_admin_user")
        if state is not StoveState.RUNNING:
            return JobResult(done=False, reason="not_running")
        gate = CooldownGate(self.store, PATH_LAST_WORK_NOTIFICATION, WORK_NOTIFICATION_COOLDOWN)
        skipped = self._too_soon(gate, now)
        if skipped:
            return skipped
        try:
            result = self.notifier.stove_status_work(
                self.admin_user_id, "La stufa è ora in funzione (stato WORK)")
            log_result("stove_status_work", result)
            if result.error:
                return JobResult(done=False, reason="notification_failed")
            gate.mark(now)
            return JobResult(done=result.success, reason=result.reason)
        except Exception as err:
            _LOGGER.exception("stove_status_work notification failed")
            return JobResult(done=False, reason="exception", details={"error": str(err)})

    def check_unexpected_off(self, interval_label: Optional[str], stove_on: bool,
                             status_failed: bool, now: datetime) -> JobResult:
        """Notify when the stove is off inside the interval we ignited it for."""
        if not self.admin_user_id:
            return JobResult(done=False, reason="no_admin_user")
        if interval_label is None or stove_on or status_failed:
            return JobResult(done=False, reason="not_applicable")
        try:
            marker = self.store.get(PATH_LAST_IGNITION_INTERVAL) or {}
            if marker.get("interval") != interval_label:
                return JobResult(done=False, reason="different_interval")
            gate = CooldownGate(self.store, PATH_LAST_UNEXPECTED_OFF_NOTIFICATION, UNEXPECTED_OFF_COOLDOWN)
            skipped = self._too_soon(gate, now)
            if skipped:
                return skipped
            result = self.notifier.stove_unexpected_off(
                self.admin_user_id,
                f"La stufa si è spenta durante l'orario programmato ({interval_label})",
            )
            log_result("stove_unexpected_off", result)
            if result.error:
                return JobResult(done=False, reason="notification_failed")
            gate.mark(now)
            return JobResult(done=result.success, reason=result.reason)
        except Exception as err:
            _LOGGER.exception("Unexpected-off check failed")
            return JobResult(done=False, reason="exception", details={"error": str(err)})

    def track_maintenance(self, tracker, state: StoveState, now: datetime) -> JobResult:
        """Add running time to the maintenance counter and send threshold alerts."""
        try:
            tracked = tracker.track_usage(state, now)
            if not tracked.tracked:
                return JobResult(done=False, reason=tracked.reason)
            if tracked.alert is not None:
                alert = tracked.alert
                result = self.notifier.maintenance_alert(
                    self.admin_user_id, alert.level, round(alert.remaining_hours, 1), alert.message)
                log_result(f"maintenance_{alert.level}", result)
            return JobResult(done=True, details={
                "elapsedMinutes": tracked.elapsed_minutes,
                "currentHours": tracked.current_hours,
                "needsCleaning": tracked.needs_cleaning,
            })
        except Exception as err:
            _LOGGER.exception("Maintenance tracking failed")
            return JobResult(done=False, reason="exception", details={"error": str(err)})
