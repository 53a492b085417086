from datetime import datetime, timezone

from automation.schedule import parse_intervals
from schema_init import seed_defaults

NOW = datetime(2026, 1, 19, 18, 30, tzinfo=timezone.utc)


def test_seeds_valid_week(store):
    assert seed_defaults(store, now=NOW) is True

    assert store.get("schedules-v2/mode") == {
        "enabled": True, "semiManual": False, "lastUpdated": NOW.isoformat(),
    }
    assert store.get("schedules-v2/activeScheduleId") == "default"
    slots = store.get("schedules-v2/schedules/default/slots")
    assert len(slots) == 7
    assert len(parse_intervals(slots["Lunedì"])) == 2
    assert len(parse_intervals(slots["Domenica"])) == 1
    assert store.get("maintenance/needsCleaning") is False


def test_existing_mode_is_left_alone(store):
    store.set("schedules-v2/mode", {"enabled": False})

    assert seed_defaults(store, now=NOW) is False
    assert store.get("schedules-v2/activeScheduleId") is None
