from datetime import datetime, timedelta, timezone

from automation.maintenance import MaintenanceTracker, pending_alert
from automation.store import MemoryStateStore
from automation.stove_api import StoveState

NOW = datetime(2026, 1, 19, 18, 30, tzinfo=timezone.utc)


def tracker_with(**record):
    store = MemoryStateStore()
    if record:
        store.set("maintenance", {"targetHours": 50.0, "needsCleaning": False,
                                  "lastNotificationLevel": 0, **record})
    return store, MaintenanceTracker(store)


def test_only_running_stove_is_tracked():
    store, tracker = tracker_with()
    assert tracker.track_usage(StoveState.IGNITING, NOW).reason == "not_running"
    assert store.get("maintenance") is None


def test_first_run_initialises_record():
    store, tracker = tracker_with()

    result = tracker.track_usage(StoveState.RUNNING, NOW)

    assert result.reason == "initialized"
    assert store.get("maintenance/currentHours") == 0.0
    assert store.get("maintenance/targetHours") == 50.0
    assert store.get("maintenance/lastUpdatedAt") == NOW.isoformat()


def test_updates_closer_than_half_a_minute_are_ignored():
    _, tracker = tracker_with(currentHours=1.0,
                              lastUpdatedAt=(NOW - timedelta(seconds=10)).isoformat())
    assert tracker.track_usage(StoveState.RUNNING, NOW).reason == "too_soon"


def test_accumulates_hours_and_alerts_at_80_percent():
    store, tracker = tracker_with(currentHours=39.9,
                                  lastUpdatedAt=(NOW - timedelta(minutes=30)).isoformat())

    result = tracker.track_usage(StoveState.RUNNING, NOW)

    assert result.tracked
    assert result.elapsed_minutes == 30.0
    assert result.current_hours == 40.4
    assert result.alert.level == 80
    assert result.alert.message == "9.6h rimanenti prima della manutenzione (81%)"
    assert store.get("maintenance/lastNotificationLevel") == 80
    assert store.get("maintenance/lastUpdatedAt") == NOW.isoformat()
    assert tracker.can_ignite()


def test_reaching_target_blocks_ignition():
    store, tracker = tracker_with(currentHours=49.8, lastNotificationLevel=90,
                                  lastUpdatedAt=(NOW - timedelta(minutes=15)).isoformat())

    result = tracker.track_usage(StoveState.RUNNING, NOW)

    assert result.needs_cleaning
    assert result.alert.level == 100
    assert result.alert.message.startswith("Manutenzione richiesta!")
    assert not tracker.can_ignite()


def test_each_threshold_alerts_once():
    assert pending_alert(85.0, 42.5, 50.0, last_level=80) is None
    assert pending_alert(92.0, 46.0, 50.0, last_level=80).level == 90
    # several thresholds crossed at once report only the highest
    assert pending_alert(100.0, 50.0, 50.0, last_level=0).level == 100


def test_missing_record_allows_ignition():
    _, tracker = tracker_with()
    assert tracker.can_ignite()
