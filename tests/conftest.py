from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any

import pytest

from automation.dispatch import TaskDispatcher
from automation.housekeeping import Housekeeping
from automation.maintenance import MaintenanceTracker
from automation.notifications import NotificationResult
from automation.reconciler import SchedulerCheck, SchedulerSettings
from automation.store import MemoryStateStore
from automation.stove_api import StoveStatus, parse_status
from automation.stove_sync import StoveSync

# Monday 19 January 2026, 19:30 in Rome (CET, UTC+1)
MONDAY_EVENING = datetime(2026, 1, 19, 18, 30, tzinfo=timezone.utc)
MONDAY = "Lunedì"
ADMIN = "admin-1"


class FakeGateway:
    """Stove gateway double.

    ``statuses`` is consumed one entry per get_status call, the last entry
    repeating; an Exception entry is raised instead of returned.
    """

    def __init__(self, status: Any = "Spento", fan: Any = 3, power: Any = 2):
        self.statuses = [status]
        self.fan = fan
        self.power = power
        self.fail: dict[str, Exception] = {}
        self.error = (0, "")
        self.calls: list[tuple] = []
        self._lock = threading.Lock()

    def _record(self, name, *args):
        with self._lock:
            self.calls.append((name, *args))
        if name in self.fail:
            raise self.fail[name]

    def called(self, name):
        return [call[1:] for call in self.calls if call[0] == name]

    def get_status(self):
        self._record("get_status")
        with self._lock:
            entry = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(entry, Exception):
            raise entry
        return StoveStatus(description=entry, state=parse_status(entry),
                           error_code=self.error[0], error_description=self.error[1])

    def get_fan_level(self):
        self._record("get_fan_level")
        if isinstance(self.fan, Exception):
            raise self.fan
        return self.fan

    def get_power_level(self):
        self._record("get_power_level")
        if isinstance(self.power, Exception):
            raise self.power
        return self.power

    def ignite(self, power=None):
        self._record("ignite", power)
        return {"Success": True}

    def shutdown(self):
        self._record("shutdown")
        return {"Success": True}

    def set_power_level(self, level):
        self._record("set_power_level", level)
        return {"Result": level}

    def set_fan_level(self, level):
        self._record("set_fan_level", level)
        return {"Result": level}


class RecordingNotifier:
    def __init__(self, result: NotificationResult | None = None):
        self.result = result or NotificationResult(success=True)
        self.sent: list[tuple] = []

    def _send(self, *entry):
        self.sent.append(entry)
        return self.result

    def kinds(self):
        return [entry[0] for entry in self.sent]

    def scheduler_action(self, user_id, action, message):
        return self._send(f"scheduler_{action}", user_id, message)

    def maintenance_alert(self, user_id, level, remaining_hours, message):
        return self._send(f"maintenance_{level}", user_id, remaining_hours, message)

    def stove_status_work(self, user_id, message):
        return self._send("stove_status_work", user_id, message)

    def stove_unexpected_off(self, user_id, message):
        return self._send("stove_unexpected_off", user_id, message)


class RecordingEventLog:
    def __init__(self):
        self.executions: list[dict] = []
        self.analytics: list[dict] = []
        self.tuning: list[dict] = []
        self.pruned: list[datetime] = []
        self.fail_execution = False

    def log_execution(self, status, mode, duration_ms, details=None, now=None):
        if self.fail_execution:
            raise RuntimeError("audit store down")
        self.executions.append({"status": status, "mode": mode, "details": details})

    def log_analytics(self, event_type, source, power_level=None, fan_level=None,
                      previous_level=None, now=None):
        self.analytics.append({"event_type": event_type, "source": source,
                               "power_level": power_level, "fan_level": fan_level,
                               "previous_level": previous_level})

    def log_pid_tuning(self, room_id, setpoint, measured, output, error, integral, now=None):
        self.tuning.append({"room_id": room_id, "setpoint": setpoint, "measured": measured,
                            "output": output, "error": error, "integral": integral})

    def prune_pid_tuning(self, older_than):
        self.pruned.append(older_than)
        return 0


class FakeBridge:
    def __init__(self):
        self.setpoints: list[tuple] = []
        self.commands: list[tuple] = []

    def publish_setpoint(self, room_id, value):
        self.setpoints.append((room_id, value))

    def publish_command(self, room_id, command):
        self.commands.append((room_id, command))


def seed_schedule(store, slots, day=MONDAY, mode=None):
    store.set("schedules-v2/mode", mode or {"enabled": True, "semiManual": False})
    store.set("schedules-v2/activeScheduleId", "default")
    if slots is not None:
        store.set(f"schedules-v2/schedules/default/slots/{day}", slots)


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def event_log():
    return RecordingEventLog()


@pytest.fixture
def bridge():
    return FakeBridge()


@pytest.fixture
def dispatcher():
    pool = TaskDispatcher(max_workers=2)
    yield pool
    pool.shutdown()


@pytest.fixture
def make_check(store, gateway, notifier, event_log, dispatcher, bridge):
    def build(admin_user_id=ADMIN, **settings):
        housekeeping = Housekeeping(store, notifier, admin_user_id, bridge)
        return SchedulerCheck(
            store, gateway, notifier, event_log, dispatcher,
            maintenance=MaintenanceTracker(store),
            housekeeping=housekeeping,
            stove_sync=StoveSync(store, bridge),
            settings=SchedulerSettings(admin_user_id=admin_user_id, **settings),
            sleep=lambda seconds: None,
        )
    return build
