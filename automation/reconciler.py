"""The scheduler check: one reconciliation pass of schedule against stove.

``SchedulerCheck.run`` is invoked by the cron endpoint. It reads the operating
mode and today's schedule, fetches live telemetry, decides whether to ignite,
shut down or adjust levels, layers the PID overlay on top and hands every
non-essential job to the TaskDispatcher. It always returns a CheckResult;
collaborator failures degrade to a status, never to an exception.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

from .const import (
    DEFAULT_FAN_LEVEL,
    DEFAULT_KD,
    DEFAULT_KI,
    DEFAULT_KP,
    DEFAULT_PID_DT_MINUTES,
    DEFAULT_PID_SETPOINT,
    DEFAULT_POWER_LEVEL,
    DEFAULT_SCHEDULE_ID,
    EVENT_FAN_CHANGE,
    EVENT_IGNITE,
    EVENT_POWER_CHANGE,
    EVENT_SHUTDOWN,
    PATH_ACTIVE_SCHEDULE_ID,
    PATH_CRON_HEALTH,
    PATH_LAST_IGNITION_INTERVAL,
    PATH_MODE,
    PATH_PID_BOOST,
    PATH_PID_CONFIG,
    PATH_PID_STATE,
    PATH_ROOM_STATUS,
    PATH_SCHEDULE_SLOTS,
    PATH_STOVE_STATE,
    PID_CLEANUP_INTERVAL,
    PID_DT_MAX_MINUTES,
    PID_DT_MIN_MINUTES,
    SOURCE_PID,
    SOURCE_SCHEDULER,
    CheckStatus,
)
from .cooldown import from_epoch_ms, parse_marker, to_epoch_ms
from .notifications import log_result
from .pid import ControllerMemory, PIDController
from .schedule import Interval, local_clock, parse_intervals, resolve_active_interval
from .stove_api import StoveState

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerSettings:
    timezone: str = "Europe/Rome"
    admin_user_id: Optional[str] = None
    confirm_delay: float = 0.0
    confirm_retries: int = 0
    sensor_max_age: timedelta = timedelta(minutes=30)
    setpoint_min: float = 10.0
    setpoint_max: float = 28.0
    integral_limit: float = 10.0
    pid_log_retention: timedelta = timedelta(days=7)


@dataclass(frozen=True)
class Telemetry:
    description: Optional[str]
    state: StoveState
    fan_level: int
    power_level: int
    status_failed: bool = False
    error_code: int = 0
    error_description: str = ""

    @property
    def is_on(self) -> bool:
        return self.state.is_on


@dataclass
class CheckResult:
    status: CheckStatus
    giorno: str
    ora: str
    message: Optional[str] = None
    mode: str = "auto"
    active_interval: Optional[Interval] = None
    return_to_auto_at: Any = None
    scheduler_enabled: Optional[bool] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status.value, "giorno": self.giorno, "ora": self.ora}
        if self.message:
            body["message"] = self.message
        if self.scheduler_enabled is not None:
            body["schedulerEnabled"] = self.scheduler_enabled
        if self.return_to_auto_at is not None:
            body["returnToAutoAt"] = self.return_to_auto_at
        if self.active_interval is not None or self.status in (CheckStatus.ON, CheckStatus.OFF):
            body["activeSchedule"] = self.active_interval.to_dict() if self.active_interval else None
        return body


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerCheck:
    def __init__(self, store, gateway, notifier, event_log, dispatcher, maintenance,
                 housekeeping, stove_sync, settings: Optional[SchedulerSettings] = None,
                 clock=None, sleep=time.sleep):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.event_log = event_log
        self.dispatcher = dispatcher
        self.maintenance = maintenance
        self.housekeeping = housekeeping
        self.stove_sync = stove_sync
        self.settings = settings or SchedulerSettings()
        self.tz = ZoneInfo(self.settings.timezone)
        self.clock = clock or _utcnow
        self.sleep = sleep

    # -- entry point ---------------------------------------------------------

    def run(self, now: Optional[datetime] = None) -> CheckResult:
        started = time.monotonic()
        now = now or self.clock()
        self._heartbeat(now)

        try:
            result = self._check(now)
        except Exception as err:
            _LOGGER.exception("Scheduler check failed")
            giorno, ora, _ = local_clock(now, self.tz)
            result = CheckResult(CheckStatus.ERROR, giorno, ora, message=str(err),
                                 details={"error": str(err)})

        duration_ms = int((time.monotonic() - started) * 1000)
        _LOGGER.info("Scheduler check finished: %s (%d ms)", result.status.value, duration_ms)
        try:
            details = {"giorno": result.giorno, "ora": result.ora, **result.details}
            if result.active_interval is not None:
                details["activeSchedule"] = result.active_interval.to_dict()
            self.event_log.log_execution(result.status.value, result.mode, duration_ms,
                                         details, now=now)
        except Exception:
            _LOGGER.exception("Failed to write execution audit record")
        return result

    def _heartbeat(self, now: datetime) -> None:
        try:
            self.store.set(PATH_CRON_HEALTH, now.isoformat())
        except Exception:
            _LOGGER.exception("Failed to save cron heartbeat")

    # -- reconciliation ------------------------------------------------------

    def _check(self, now: datetime) -> CheckResult:
        giorno, ora, _ = local_clock(now, self.tz)

        mode = self.store.get(PATH_MODE) or {"enabled": False, "semiManual": False}
        if not mode.get("enabled"):
            return CheckResult(CheckStatus.MANUAL, giorno, ora, mode="manual",
                               message="Scheduler disattivato - modalità manuale attiva")

        semi_manual = bool(mode.get("semiManual"))
        if semi_manual:
            return_at = parse_marker(mode.get("returnToAutoAt"))
            # no return time means semi-manual until the user ends it
            if return_at is None or return_at > now:
                return CheckResult(
                    CheckStatus.SEMI_MANUAL, giorno, ora, mode="semi-manual",
                    message="Modalità semi-manuale attiva - in attesa del prossimo cambio scheduler",
                    return_to_auto_at=mode.get("returnToAutoAt"),
                )

        schedule_id = self.store.get(PATH_ACTIVE_SCHEDULE_ID) or DEFAULT_SCHEDULE_ID
        raw_slots = self.store.get(PATH_SCHEDULE_SLOTS.format(schedule_id=schedule_id, day=giorno))
        intervals = parse_intervals(raw_slots)
        active = resolve_active_interval(intervals, now, self.tz)

        telemetry = self.fetch_telemetry()
        self._spawn_housekeeping(telemetry, now)

        if raw_slots is None:
            self._spawn_sync(telemetry, telemetry.is_on, now)
            return _with_stove_error(
                CheckResult(CheckStatus.NO_SCHEDULE, giorno, ora, message="Nessuno scheduler",
                            scheduler_enabled=True, details={"scheduleId": schedule_id}),
                telemetry)

        if active is not None:
            result, changed = self._reconcile_active(active, telemetry, semi_manual, giorno, ora, now)
        else:
            result, changed = self._reconcile_idle(telemetry, giorno, ora, now)
        _with_stove_error(result, telemetry)

        if changed and semi_manual:
            self._leave_semi_manual(mode, now)
        return result

    def _reconcile_active(self, active: Interval, telemetry: Telemetry, semi_manual: bool,
                          giorno: str, ora: str, now: datetime):
        def finish(status, message=None, **details):
            return CheckResult(status, giorno, ora, message=message, active_interval=active,
                               scheduler_enabled=True, details=details)

        if telemetry.is_on:
            boost = self.store.get(PATH_PID_BOOST) or {}
            power, changed = self._adjust_levels(active, telemetry.power_level, telemetry.fan_level,
                                                 boost_active=bool(boost.get("active")), now=now)
            self._spawn_sync(telemetry, True, now)
            pid = None
            if telemetry.state is StoveState.RUNNING:
                pid = self.run_pid(active, power, semi_manual, now)
                changed = changed or bool(pid.get("adjusted"))
            return finish(CheckStatus.ON, pid=pid), changed

        if telemetry.status_failed:
            _LOGGER.warning("Scheduled ignition skipped: stove status unavailable")
            return finish(CheckStatus.STATUS_UNAVAILABLE,
                          "Accensione schedulata saltata per sicurezza - stato stufa non disponibile"), False

        if not self.maintenance.can_ignite():
            _LOGGER.warning("Scheduled ignition blocked: maintenance required")
            self._spawn_unexpected_off(active, telemetry, now)
            self._spawn_sync(telemetry, False, now)
            return finish(CheckStatus.MAINTENANCE_REQUIRED,
                          "Accensione schedulata bloccata - manutenzione stufa richiesta"), False

        try:
            confirmation = self._confirm_status()
        except Exception as err:
            _LOGGER.error("Confirmation status fetch failed: %s", err)
            self._spawn_unexpected_off(active, telemetry, now)
            return finish(CheckStatus.CONFIRMATION_FAILED,
                          "Accensione schedulata saltata - impossibile confermare stato stufa"), False
        if confirmation.state.is_on:
            _LOGGER.warning("Stove already on (%s), skipping ignition", confirmation.description)
            return finish(CheckStatus.ALREADY_ON, "Stufa già accesa - race condition evitato"), False

        try:
            self.gateway.ignite(active.power)
        except Exception as err:
            _LOGGER.exception("Failed to ignite stove")
            self._spawn_unexpected_off(active, telemetry, now)
            return finish(CheckStatus.NO_CHANGE, f"Accensione fallita: {err}", error=str(err)), False

        _LOGGER.info("Stove ignited for interval %s at power %d", active.label, active.power)
        self._update_stove_state({
            "status": "START",
            "statusDescription": "Avvio automatico",
            "fanLevel": active.fan,
            "powerLevel": active.power,
        }, SOURCE_SCHEDULER, now)
        self._mark_ignition(active, now)
        self._spawn_notification("ignition",
                                 f"Stufa accesa automaticamente alle {ora} (P{active.power}, V{active.fan})")
        self._spawn_analytics(EVENT_IGNITE, power_level=active.power, fan_level=active.fan, now=now)
        self._spawn_sync(telemetry, True, now)
        self._adjust_levels(active, telemetry.power_level, telemetry.fan_level,
                            boost_active=False, now=now)
        return finish(CheckStatus.ON), True

    def _reconcile_idle(self, telemetry: Telemetry, giorno: str, ora: str, now: datetime):
        def finish(status, message=None, **details):
            return CheckResult(status, giorno, ora, message=message, scheduler_enabled=True,
                               details=details)

        if not telemetry.is_on:
            self._spawn_sync(telemetry, False, now)
            return finish(CheckStatus.OFF), False

        try:
            self.gateway.shutdown()
        except Exception as err:
            _LOGGER.exception("Failed to shut down stove")
            return finish(CheckStatus.NO_CHANGE, f"Spegnimento fallito: {err}", error=str(err)), False

        _LOGGER.info("Stove shut down, no active interval")
        self._update_stove_state({
            "status": "STANDBY",
            "statusDescription": "Spegnimento automatico",
        }, SOURCE_SCHEDULER, now)
        self._spawn_notification("shutdown", f"Stufa spenta automaticamente alle {ora}")
        self._spawn_analytics(EVENT_SHUTDOWN, now=now)
        self._spawn_sync(telemetry, False, now)
        return finish(CheckStatus.OFF), True

    def _adjust_levels(self, active: Interval, current_power: int, current_fan: int,
                       boost_active: bool, now: datetime):
        """Bring power and fan to the interval's levels; return (power, changed)."""
        changed = False
        power = current_power

        if current_power != active.power and not boost_active:
            try:
                self.gateway.set_power_level(active.power)
            except Exception:
                _LOGGER.exception("Failed to set power level %d", active.power)
            else:
                self._update_stove_state({"powerLevel": active.power}, SOURCE_SCHEDULER, now)
                self._spawn_analytics(EVENT_POWER_CHANGE, power_level=active.power,
                                      previous_level=current_power, now=now)
                power, changed = active.power, True

        if current_fan != active.fan:
            try:
                self.gateway.set_fan_level(active.fan)
            except Exception:
                _LOGGER.exception("Failed to set fan level %d", active.fan)
            else:
                self._update_stove_state({"fanLevel": active.fan}, SOURCE_SCHEDULER, now)
                self._spawn_analytics(EVENT_FAN_CHANGE, fan_level=active.fan,
                                      previous_level=current_fan, now=now)
                changed = True

        return power, changed

    def _leave_semi_manual(self, mode: Dict[str, Any], now: datetime) -> None:
        try:
            self.store.set(PATH_MODE, {
                "enabled": bool(mode.get("enabled")),
                "semiManual": False,
                "lastUpdated": now.isoformat(),
            })
            _LOGGER.info("Schedule change applied, semi-manual mode cleared")
        except Exception:
            _LOGGER.exception("Failed to clear semi-manual mode")

    # -- telemetry -----------------------------------------------------------

    def fetch_telemetry(self) -> Telemetry:
        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="stove-telemetry") as pool:
            status_future = pool.submit(self.gateway.get_status)
            fan_future = pool.submit(self.gateway.get_fan_level)
            power_future = pool.submit(self.gateway.get_power_level)

        status = None
        try:
            status = status_future.result()
        except Exception as err:
            _LOGGER.error("Status fetch failed: %s", err)

        fan = _level_or_default(fan_future, "fan", DEFAULT_FAN_LEVEL)
        power = _level_or_default(power_future, "power", DEFAULT_POWER_LEVEL)

        if status is None:
            return Telemetry(None, StoveState.UNKNOWN, fan, power, status_failed=True)
        return Telemetry(status.description, status.state, fan, power,
                         error_code=status.error_code, error_description=status.error_description)

    def _confirm_status(self):
        for _ in range(max(0, int(self.settings.confirm_retries))):
            self._confirm_delay()
            try:
                return self.gateway.get_status()
            except Exception as err:
                _LOGGER.info("Confirmation fetch failed (%s), retrying", err)
        self._confirm_delay()
        return self.gateway.get_status()

    def _confirm_delay(self) -> None:
        if self.settings.confirm_delay > 0:
            self.sleep(self.settings.confirm_delay)

    # -- PID overlay ---------------------------------------------------------

    def run_pid(self, active: Interval, current_power: int, semi_manual: bool,
                now: datetime) -> Dict[str, Any]:
        try:
            return self._run_pid(active, current_power, semi_manual, now)
        except Exception as err:
            _LOGGER.exception("PID automation failed")
            return {"skipped": True, "reason": "exception", "error": str(err)}

    def _run_pid(self, active: Interval, current_power: int, semi_manual: bool,
                 now: datetime) -> Dict[str, Any]:
        admin = self.settings.admin_user_id
        config: Dict[str, Any] = {}
        reading: Optional[Dict[str, Any]] = None
        if semi_manual:
            reason = "semi_manual"
        elif not admin:
            reason = "no_admin_user"
        else:
            config = self.store.get(PATH_PID_CONFIG.format(user_id=admin)) or {}
            reason = None
            if not config.get("enabled"):
                reason = "pid_disabled"
            elif not config.get("targetRoomId"):
                reason = "no_target_room"
            else:
                reading = self._room_reading(config["targetRoomId"], now)
                if reading is None:
                    reason = "no_sensor_reading"

        if reason is None:
            measured = reading.get("temperature")
            setpoint = config.get("manualSetpoint", DEFAULT_PID_SETPOINT)
            if not _is_number(measured):
                reason = "no_temperature_data"
            elif not _is_number(setpoint) or not (
                    self.settings.setpoint_min <= setpoint <= self.settings.setpoint_max):
                reason = "invalid_setpoint"

        if reason is not None:
            _LOGGER.debug("PID automation skipped: %s", reason)
            self.store.set(PATH_PID_BOOST, {"active": False})
            return {"skipped": True, "reason": reason}

        memory = ControllerMemory.from_dict(self.store.get(PATH_PID_STATE))
        dt = DEFAULT_PID_DT_MINUTES
        if memory.last_run:
            dt = (to_epoch_ms(now) - int(memory.last_run)) / 60000
            dt = max(PID_DT_MIN_MINUTES, min(PID_DT_MAX_MINUTES, dt))

        pid = PIDController(
            kp=config.get("kp", DEFAULT_KP),
            ki=config.get("ki", DEFAULT_KI),
            kd=config.get("kd", DEFAULT_KD),
            integral_limit=self.settings.integral_limit,
        )
        pid.set_state(memory)
        target = pid.compute(setpoint, measured, dt)

        applied = target == current_power
        if not applied:
            try:
                self.gateway.set_power_level(target)
            except Exception:
                _LOGGER.exception("PID failed to set power level %d", target)
            else:
                applied = True
                _LOGGER.info("PID: %.1f°C -> %.1f°C target, power %d -> %d",
                             measured, setpoint, current_power, target)
                self._update_stove_state({"powerLevel": target}, SOURCE_PID, now)
                self._spawn_analytics(EVENT_POWER_CHANGE, source=SOURCE_PID, power_level=target,
                                      previous_level=current_power, now=now)

        if applied and target != active.power:
            self.store.set(PATH_PID_BOOST, {
                "active": True,
                "powerLevel": target,
                "scheduledPower": active.power,
                "appliedAt": to_epoch_ms(now),
            })
        else:
            self.store.set(PATH_PID_BOOST, {"active": False})

        last_cleanup = memory.last_cleanup
        if last_cleanup is None or now - from_epoch_ms(int(last_cleanup)) > PID_CLEANUP_INTERVAL:
            self.dispatcher.spawn("pid_log_cleanup", self.event_log.prune_pid_tuning,
                                  now - self.settings.pid_log_retention)
            last_cleanup = to_epoch_ms(now)

        state = replace(pid.get_state(), last_run=to_epoch_ms(now), last_cleanup=last_cleanup)
        self.store.set(PATH_PID_STATE, state.to_dict())

        try:
            self.event_log.log_pid_tuning(config["targetRoomId"], setpoint, measured, target,
                                          pid.last_error, pid.integral, now=now)
        except Exception:
            _LOGGER.exception("Failed to write PID tuning entry")

        return {
            "adjusted": target != current_power and applied,
            "from": current_power,
            "to": target,
            "temperature": measured,
            "setpoint": setpoint,
        }

    def _room_reading(self, room_id, now: datetime) -> Optional[Dict[str, Any]]:
        rooms = self.store.get(f"{PATH_ROOM_STATUS}/rooms") or {}
        for key, room in rooms.items():
            if not isinstance(room, dict):
                continue
            if str(room.get("room_id", key)) != str(room_id):
                continue
            updated = parse_marker(room.get("updatedAt"))
            if updated is None or now - updated > self.settings.sensor_max_age:
                return None
            return room
        return None

    # -- bookkeeping and side effects ----------------------------------------

    def _update_stove_state(self, fields: Dict[str, Any], source: str, now: datetime) -> None:
        try:
            self.store.update(PATH_STOVE_STATE, {**fields, "source": source,
                                                 "updatedAt": now.isoformat()})
        except Exception:
            _LOGGER.exception("Failed to update stove state record")

    def _mark_ignition(self, active: Interval, now: datetime) -> None:
        try:
            self.store.set(PATH_LAST_IGNITION_INTERVAL, {
                "interval": active.label,
                "timestamp": to_epoch_ms(now),
            })
        except Exception:
            _LOGGER.exception("Failed to track ignition interval")

    def _spawn_housekeeping(self, telemetry: Telemetry, now: datetime) -> None:
        jobs = self.housekeeping
        self.dispatcher.spawn("maintenance", jobs.track_maintenance, self.maintenance,
                              telemetry.state, now)
        self.dispatcher.spawn("work_notification", jobs.notify_work_status, telemetry.state, now)
        self.dispatcher.spawn("calibration", jobs.calibrate_valves_if_needed, now)
        self.dispatcher.spawn("weather", jobs.refresh_weather_if_needed, now)
        self.dispatcher.spawn("token_cleanup", jobs.cleanup_tokens_if_needed, now)

    def _spawn_unexpected_off(self, active: Interval, telemetry: Telemetry, now: datetime) -> None:
        self.dispatcher.spawn("unexpected_off", self.housekeeping.check_unexpected_off,
                              active.label, telemetry.is_on, telemetry.status_failed, now)

    def _spawn_sync(self, telemetry: Telemetry, stove_on: bool, now: datetime) -> None:
        if telemetry.status_failed:
            return
        self.dispatcher.spawn("stove_sync", self.stove_sync.sync, stove_on, now)

    def _spawn_notification(self, action: str, message: str) -> None:
        def send():
            result = self.notifier.scheduler_action(self.settings.admin_user_id, action, message)
            log_result(f"scheduler_{action}", result)

        self.dispatcher.spawn(f"scheduler_{action}_notification", send)

    def _spawn_analytics(self, event_type: str, source: str = SOURCE_SCHEDULER,
                         power_level=None, fan_level=None, previous_level=None,
                         now: Optional[datetime] = None) -> None:
        self.dispatcher.spawn(f"analytics_{event_type}", self.event_log.log_analytics,
                              event_type, source, power_level=power_level,
                              fan_level=fan_level, previous_level=previous_level, now=now)


def _with_stove_error(result: CheckResult, telemetry: Telemetry) -> CheckResult:
    if telemetry.error_code:
        result.details["stoveError"] = {
            "code": telemetry.error_code,
            "description": telemetry.error_description,
        }
    return result


def _level_or_default(future, name: str, default: int) -> int:
    try:
        value = future.result()
    except Exception as err:
        _LOGGER.warning("%s level fetch failed (%s), assuming %d", name.capitalize(), err, default)
        return default
    if value is None:
        _LOGGER.warning("%s level unavailable, assuming %d", name.capitalize(), default)
        return default
    return int(value)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
