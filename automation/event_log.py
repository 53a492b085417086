"""Time-series records: cron executions, analytics events and PID tuning."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from models import AnalyticsEvent, CronExecution, PidTuningEntry, db

from .const import EXECUTION_LOG_RETENTION

_LOGGER = logging.getLogger(__name__)


def _utc(moment: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is written in UTC
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _iso(moment: Optional[datetime]) -> Optional[str]:
    moment = _utc(moment)
    return moment.isoformat() if moment else None


class EventLog:
    """Writes must run inside an application context."""

    def log_execution(self, status: str, mode: str, duration_ms: int,
                      details: Optional[Dict[str, Any]] = None,
                      now: Optional[datetime] = None) -> None:
        """Record one scheduler check. Never raises."""
        now = now or datetime.now(timezone.utc)
        try:
            db.session.add(CronExecution(
                timestamp=now,
                status=status,
                mode=mode,
                duration_ms=int(duration_ms),
                details=details,
            ))
            db.session.commit()
        except Exception:
            db.session.rollback()
            _LOGGER.exception("Failed to write cron execution log")
            return

        try:
            self.prune_executions(now - EXECUTION_LOG_RETENTION)
        except Exception:
            db.session.rollback()
            _LOGGER.exception("Failed to prune cron execution log")

    def prune_executions(self, older_than: datetime) -> int:
        removed = CronExecution.query.filter(CronExecution.timestamp < older_than).delete(
            synchronize_session=False)
        db.session.commit()
        return removed

    def recent_executions(self, limit: int = 20) -> List[Dict[str, Any]]:
        rows = CronExecution.query.order_by(CronExecution.timestamp.desc()).limit(limit).all()
        return [{
            "timestamp": _iso(r.timestamp),
            "status": r.status,
            "mode": r.mode,
            "duration": r.duration_ms,
            "details": r.details,
        } for r in rows]

    def log_analytics(self, event_type: str, source: str, power_level: Optional[int] = None,
                      fan_level: Optional[int] = None, previous_level: Optional[int] = None,
                      now: Optional[datetime] = None) -> None:
        db.session.add(AnalyticsEvent(
            timestamp=now or datetime.now(timezone.utc),
            event_type=event_type,
            source=source,
            power_level=power_level,
            fan_level=fan_level,
            previous_level=previous_level,
        ))
        db.session.commit()

    def log_pid_tuning(self, room_id: str, setpoint: float, measured: float, output: int,
                       error: float, integral: float, now: Optional[datetime] = None) -> None:
        db.session.add(PidTuningEntry(
            timestamp=now or datetime.now(timezone.utc),
            room_id=str(room_id),
            setpoint=setpoint,
            measured=measured,
            output=output,
            error=error,
            integral=integral,
        ))
        db.session.commit()

    def prune_pid_tuning(self, older_than: datetime) -> int:
        removed = PidTuningEntry.query.filter(PidTuningEntry.timestamp < older_than).delete(
            synchronize_session=False)
        db.session.commit()
        _LOGGER.info("Removed %d PID tuning entries older than %s", removed, older_than.isoformat())
        return removed

    def recent_pid_tuning(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = PidTuningEntry.query.order_by(PidTuningEntry.timestamp.desc()).limit(limit).all()
        return [{
            "timestamp": _iso(r.timestamp),
            "roomId": r.room_id,
            "setpoint": r.setpoint,
            "measured": r.measured,
            "output": r.output,
            "error": r.error,
            "integral": r.integral,
        } for r in rows]
