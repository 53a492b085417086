"""Keep room thermostats in step with the stove.

While the stove heats the house the synced rooms get a low setpoint so their
radiator valves stay shut; when it stops they go back to their own schedule.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from mqtt_bridge import COMMAND_RESUME_SCHEDULE

from .const import DEFAULT_STOVE_SYNC_TEMPERATURE, PATH_STOVE_SYNC
from .cooldown import to_epoch_ms

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    synced: bool
    reason: Optional[str] = None
    rooms: tuple = ()
    temperature: Optional[float] = None


class StoveSync:
    def __init__(self, store, bridge=None):
        self.store = store
        self.bridge = bridge

    def config(self) -> dict:
        return self.store.get(PATH_STOVE_SYNC) or {
            "enabled": False,
            "rooms": [],
            "stoveTemperature": DEFAULT_STOVE_SYNC_TEMPERATURE,
            "stoveMode": False,
        }

    def sync(self, stove_on: bool, now: datetime) -> SyncResult:
        config = self.config()
        if not config.get("enabled"):
            return SyncResult(synced=False, reason="disabled")
        rooms = config.get("rooms") or []
        if isinstance(rooms, dict):
            rooms = list(rooms.values())
        if not rooms:
            return SyncResult(synced=False, reason="not_configured")
        if bool(config.get("stoveMode")) == stove_on:
            return SyncResult(synced=False, reason="no_change")
        if self.bridge is None:
            return SyncResult(synced=False, reason="no_bridge")

        temperature = float(config.get("stoveTemperature") or DEFAULT_STOVE_SYNC_TEMPERATURE)
        names = []
        for room in rooms:
            room_id = str(room.get("id"))
            if stove_on:
                self.bridge.publish_setpoint(room_id, temperature)
            else:
                self.bridge.publish_command(room_id, COMMAND_RESUME_SCHEDULE)
            names.append(room.get("name") or room_id)

        self.store.update(PATH_STOVE_SYNC, {
            "stoveMode": stove_on,
            "lastSyncAt": to_epoch_ms(now),
            "lastSyncAction": "stove_on" if stove_on else "stove_off",
        })
        if stove_on:
            _LOGGER.info("Stove sync: %s set to %.1f°C", ", ".join(names), temperature)
        else:
            _LOGGER.info("Stove sync: %s returned to schedule", ", ".join(names))
        return SyncResult(synced=True, rooms=tuple(names),
                          temperature=temperature if stove_on else None)
