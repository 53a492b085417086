import atexit
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from functools import wraps

import click
from flask import Flask, current_app, jsonify, request
from flask_cors import CORS

from automation import SchedulerCheck, SchedulerSettings
from automation.const import CheckStatus, PATH_CRON_HEALTH, PATH_ROOM_STATUS
from automation.dispatch import TaskDispatcher
from automation.event_log import EventLog
from automation.housekeeping import Housekeeping
from automation.maintenance import MaintenanceTracker
from automation.notifications import Notifier
from automation.schedule import local_clock
from automation.store import MemoryStateStore, SqlStateStore
from automation.stove_api import StoveApi, DEFAULT_BASE_URL
from automation.stove_sync import StoveSync
from automation.weather import DEFAULT_WEATHER_URL, WeatherClient
from models import db
from mqtt_bridge import DEFAULT_PORT, ThermostatBridge
from schema_init import seed_defaults

_LOGGER = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    "CRON_SECRET": None,
    "ADMIN_USER_ID": None,
    "SCHEDULER_TIMEZONE": "Europe/Rome",
    "STOVE_API_URL": DEFAULT_BASE_URL,
    "STOVE_API_KEY": "",
    "STOVE_API_TIMEOUT": 20.0,
    "STOVE_API_RETRIES": 2,
    "CONFIRM_DELAY_SECONDS": 0.0,
    "CONFIRM_RETRIES": 0,
    "MQTT_BROKER": None,
    "MQTT_PORT": DEFAULT_PORT,
    "NOTIFY_WEBHOOK_URL": None,
    "WEATHER_API_URL": DEFAULT_WEATHER_URL,
    "SENSOR_MAX_AGE_MINUTES": 30,
    "PID_SETPOINT_MIN": 10.0,
    "PID_SETPOINT_MAX": 28.0,
    "PID_INTEGRAL_LIMIT": 10.0,
    "PID_LOG_RETENTION_DAYS": 7,
    "SIDE_EFFECT_WORKERS": 4,
    "STATE_BACKEND": "sql",
}


def load_settings(overrides=None):
    """Defaults, then environment variables of the same name, then overrides."""
    settings = dict(DEFAULT_SETTINGS)
    for key, default in DEFAULT_SETTINGS.items():
        raw = os.environ.get(key)
        if raw is None or raw == "":
            continue
        if isinstance(default, bool):
            settings[key] = raw.lower() in ("1", "true", "yes")
        elif isinstance(default, int):
            settings[key] = int(raw)
        elif isinstance(default, float):
            settings[key] = float(raw)
        else:
            settings[key] = raw
    settings.update(overrides or {})
    return settings


def scheduler_settings(cfg):
    return SchedulerSettings(
        timezone=cfg["SCHEDULER_TIMEZONE"],
        admin_user_id=cfg["ADMIN_USER_ID"],
        confirm_delay=float(cfg["CONFIRM_DELAY_SECONDS"]),
        confirm_retries=int(cfg["CONFIRM_RETRIES"]),
        sensor_max_age=timedelta(minutes=float(cfg["SENSOR_MAX_AGE_MINUTES"])),
        setpoint_min=float(cfg["PID_SETPOINT_MIN"]),
        setpoint_max=float(cfg["PID_SETPOINT_MAX"]),
        integral_limit=float(cfg["PID_INTEGRAL_LIMIT"]),
        pid_log_retention=timedelta(days=float(cfg["PID_LOG_RETENTION_DAYS"])),
    )


def _secret_matches(provided, expected):
    return bool(provided) and hmac.compare_digest(str(provided).encode(), str(expected).encode())


def with_cron_secret(view):
    """Reject the request unless it carries CRON_SECRET (query or bearer token)."""
    @wraps(view)
    def wrapped(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET")
        auth = request.headers.get("Authorization", "")
        candidates = [request.args.get("secret")]
        if auth.startswith("Bearer "):
            candidates.append(auth[len("Bearer "):])
        if not expected or not any(_secret_matches(c, expected) for c in candidates):
            return jsonify({"error": "Unauthorized"}), 401
        return view(*args, **kwargs)
    return wrapped


def _store_reading(app, store, room_id, reading):
    updated_at = reading.get("updated_at") or datetime.now(timezone.utc)
    with app.app_context():
        store.update(f"{PATH_ROOM_STATUS}/rooms/{room_id}", {
            "room_id": room_id,
            "temperature": reading.get("temperature"),
            "updatedAt": updated_at.isoformat(),
        })


def create_app(db_path="sqlite:///stove.db", config=None, gateway=None, bridge=None):
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = db_path
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config.update(load_settings(config))
    CORS(app)
    db.init_app(app)

    with app.app_context():
        db.create_all()

    cfg = app.config
    store = MemoryStateStore() if cfg["STATE_BACKEND"] == "memory" else SqlStateStore()

    if bridge is None and cfg["MQTT_BROKER"]:
        bridge = ThermostatBridge(
            cfg["MQTT_BROKER"],
            int(cfg["MQTT_PORT"]),
            on_reading=lambda room_id, reading: _store_reading(app, store, room_id, reading),
        )
        try:
            bridge.start()
        except OSError:
            _LOGGER.exception("MQTT broker %s unreachable, thermostat sync disabled",
                              cfg["MQTT_BROKER"])
            bridge = None
        else:
            atexit.register(bridge.stop)

    if gateway is None:
        gateway = StoveApi(cfg["STOVE_API_KEY"], cfg["STOVE_API_URL"],
                           timeout=float(cfg["STOVE_API_TIMEOUT"]),
                           retries=int(cfg["STOVE_API_RETRIES"]))

    notifier = Notifier(store, cfg["NOTIFY_WEBHOOK_URL"])
    dispatcher = TaskDispatcher(app, max_workers=int(cfg["SIDE_EFFECT_WORKERS"]))
    atexit.register(dispatcher.shutdown)
    event_log = EventLog()
    housekeeping = Housekeeping(store, notifier, cfg["ADMIN_USER_ID"], bridge,
                                WeatherClient(cfg["WEATHER_API_URL"]))
    check = SchedulerCheck(
        store, gateway, notifier, event_log, dispatcher,
        maintenance=MaintenanceTracker(store),
        housekeeping=housekeeping,
        stove_sync=StoveSync(store, bridge),
        settings=scheduler_settings(cfg),
    )

    app.extensions["state_store"] = store
    app.extensions["event_log"] = event_log
    app.extensions["dispatcher"] = dispatcher
    app.extensions["thermostat_bridge"] = bridge
    app.extensions["scheduler_check"] = check

    @app.route("/api/scheduler/check")
    @with_cron_secret
    def scheduler_check():
        try:
            result = check.run()
        except Exception as err:
            _LOGGER.exception("Scheduler check crashed")
            giorno, ora, _ = local_clock(datetime.now(timezone.utc), check.tz)
            return jsonify({"status": CheckStatus.ERROR.value, "message": str(err),
                            "giorno": giorno, "ora": ora})
        return jsonify(result.to_response())

    @app.route("/api/scheduler/executions")
    def executions():
        n = request.args.get("n", 20, type=int)
        return jsonify(event_log.recent_executions(max(1, min(n, 200))))

    @app.route("/api/health/cron")
    def cron_health():
        last_call = store.get(PATH_CRON_HEALTH)
        return jsonify({"lastCall": last_call})

    @app.route("/api/pid/tuning")
    def pid_tuning():
        n = request.args.get("n", 50, type=int)
        return jsonify(event_log.recent_pid_tuning(max(1, min(n, 500))))

    @app.cli.command("init-db")
    @click.option("--drop", is_flag=True, help="Drop all tables first.")
    def init_db(drop):
        """Create tables and seed a default schedule."""
        if drop:
            db.drop_all()
        db.create_all()
        if seed_defaults(store):
            click.echo("Seeded default schedule and maintenance record")
        else:
            click.echo("State already present, nothing seeded")

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()
    with app.app_context():
        seed_defaults(app.extensions["state_store"])
    app.run(host="0.0.0.0", port=5000, debug=False)
