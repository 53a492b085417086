from datetime import datetime, timezone

from automation.const import (
    DAY_NAMES,
    DEFAULT_SCHEDULE_ID,
    PATH_ACTIVE_SCHEDULE_ID,
    PATH_MAINTENANCE,
    PATH_MODE,
    PATH_SCHEDULE_SLOTS,
)
from automation.maintenance import default_record

# morning and evening heating on weekdays, one long block at the weekend
WEEKDAY_SLOTS = [
    {"start": "06:30", "end": "08:30", "power": 3, "fan": 3},
    {"start": "17:30", "end": "22:30", "power": 3, "fan": 3},
]
WEEKEND_SLOTS = [
    {"start": "08:00", "end": "23:00", "power": 3, "fan": 3},
]


def seed_defaults(store, now=None):
    """Write a default mode, weekly schedule and maintenance record.

    Returns False without touching anything when a mode is already stored.
    """
    if store.get(PATH_MODE) is not None:
        return False
    now = now or datetime.now(timezone.utc)
    store.set(PATH_MODE, {"enabled": True, "semiManual": False,
                          "lastUpdated": now.isoformat()})
    store.set(PATH_ACTIVE_SCHEDULE_ID, DEFAULT_SCHEDULE_ID)
    for index, day in enumerate(DAY_NAMES):
        slots = WEEKEND_SLOTS if index >= 5 else WEEKDAY_SLOTS
        store.set(PATH_SCHEDULE_SLOTS.format(schedule_id=DEFAULT_SCHEDULE_ID, day=day),
                  [dict(slot) for slot in slots])
    if store.get(PATH_MAINTENANCE) is None:
        store.set(PATH_MAINTENANCE, default_record(now))
    return True
