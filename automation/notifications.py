"""Notification triggers for the admin user.

Delivery itself is delegated to an HTTP relay (``NOTIFY_WEBHOOK_URL``) which
fans out to push, mail and so on. A trigger returns a NotificationResult
instead of raising, so callers can tell "skipped" apart from "failed".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from .const import (
    NOTIFY_MAINTENANCE,
    NOTIFY_SCHEDULER_IGNITION,
    NOTIFY_SCHEDULER_SHUTDOWN,
    NOTIFY_STATUS_WORK,
    NOTIFY_UNEXPECTED_OFF,
    PATH_NOTIFICATION_PREFS,
)

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationResult:
    success: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None


class Notifier:
    def __init__(self, store, webhook_url: Optional[str] = None, timeout: float = 10.0):
        self.store = store
        self.webhook_url = webhook_url
        self.timeout = timeout

    def trigger(self, user_id: str, type_id: str, data: Optional[Dict[str, Any]] = None) -> NotificationResult:
        if not user_id:
            return NotificationResult(skipped=True, reason="no_user")
        if not self.webhook_url:
            return NotificationResult(skipped=True, reason="webhook_not_configured")
        prefs = self.store.get(PATH_NOTIFICATION_PREFS.format(user_id=user_id)) or {}
        if prefs.get(type_id) is False:
            return NotificationResult(skipped=True, reason="disabled_by_preferences")

        payload = {
            "userId": user_id,
            "type": type_id,
            "data": data or {},
            "sentAt": datetime.now(timezone.utc).isoformat(),
        }
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        except requests.RequestException as err:
            return NotificationResult(error=str(err))
        if response.status_code >= 300:
            return NotificationResult(error=f"HTTP {response.status_code}")
        return NotificationResult(success=True)

    def scheduler_action(self, user_id, action: str, message: str) -> NotificationResult:
        type_id = NOTIFY_SCHEDULER_IGNITION if action == "ignition" else NOTIFY_SCHEDULER_SHUTDOWN
        return self.trigger(user_id, type_id, {"message": message})

    def maintenance_alert(self, user_id, level: int, remaining_hours: float, message: str) -> NotificationResult:
        return self.trigger(user_id, NOTIFY_MAINTENANCE.format(level=level),
                            {"remainingHours": remaining_hours, "message": message})

    def stove_status_work(self, user_id, message: str) -> NotificationResult:
        return self.trigger(user_id, NOTIFY_STATUS_WORK, {"message": message})

    def stove_unexpected_off(self, user_id, message: str) -> NotificationResult:
        return self.trigger(user_id, NOTIFY_UNEXPECTED_OFF, {"message": message})


def log_result(kind: str, result: NotificationResult) -> bool:
    """Log a trigger outcome at the right level; return True when delivered."""
    if result.skipped:
        _LOGGER.info("%s notification skipped: %s", kind, result.reason)
        return False
    if result.success:
        _LOGGER.info("%s notification sent", kind)
        return True
    _LOGGER.error("%s notification failed: %s", kind, result.error)
    return False
