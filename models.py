from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone


def _utcnow():
    return datetime.now(timezone.utc)


db = SQLAlchemy()


class StateEntry(db.Model):
    # one row per leaf of the hierarchical state tree, e.g. "schedules-v2/mode/enabled"
    path = db.Column(db.String(512), primary_key=True)
    value = db.Column(db.JSON, nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class CronExecution(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)
    status = db.Column(db.String(64), nullable=False)
    mode = db.Column(db.String(32), nullable=False)
    duration_ms = db.Column(db.Integer, nullable=False)
    details = db.Column(db.JSON, nullable=True)


class AnalyticsEvent(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)
    event_type = db.Column(db.String(32), nullable=False)  # stove_ignite, stove_shutdown, power_change, fan_change
    source = db.Column(db.String(32), nullable=False)
    power_level = db.Column(db.Integer, nullable=True)
    fan_level = db.Column(db.Integer, nullable=True)
    previous_level = db.Column(db.Integer, nullable=True)


class PidTuningEntry(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)
    room_id = db.Column(db.String(64), nullable=False)
    setpoint = db.Column(db.Float, nullable=False)
    measured = db.Column(db.Float, nullable=False)
    output = db.Column(db.Integer, nullable=False)
    error = db.Column(db.Float, nullable=False)
    integral = db.Column(db.Float, nullable=False)
