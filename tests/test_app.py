import pytest

import app as app_module
from app import create_app, load_settings
from models import AnalyticsEvent
from schema_init import seed_defaults

from conftest import FakeGateway

SECRET = "s3cret"


@pytest.fixture
def gateway():
    return FakeGateway(status="Spento")


@pytest.fixture
def app(tmp_path, gateway, monkeypatch):
    for key in ("CRON_SECRET", "ADMIN_USER_ID", "MQTT_BROKER", "STATE_BACKEND"):
        monkeypatch.delenv(key, raising=False)
    app = create_app(f"sqlite:///{tmp_path / 'stove.db'}",
                     config={"CRON_SECRET": SECRET, "TESTING": True}, gateway=gateway)
    yield app
    app.extensions["dispatcher"].shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


def test_settings_layering(monkeypatch):
    monkeypatch.setenv("CONFIRM_RETRIES", "3")
    monkeypatch.setenv("SCHEDULER_TIMEZONE", "Europe/Paris")

    settings = load_settings({"SCHEDULER_TIMEZONE": "UTC"})

    assert settings["CONFIRM_RETRIES"] == 3
    assert settings["SCHEDULER_TIMEZONE"] == "UTC"
    assert settings["PID_SETPOINT_MAX"] == 28.0


@pytest.mark.parametrize("url, headers", [
    ("/api/scheduler/check", {}),
    ("/api/scheduler/check?secret=wrong", {}),
    ("/api/scheduler/check", {"Authorization": "Bearer wrong"}),
])
def test_check_requires_secret(client, gateway, url, headers):
    resp = client.get(url, headers=headers)
    assert resp.status_code == 401
    assert gateway.calls == []


def test_check_rejects_everything_without_configured_secret(tmp_path, gateway, monkeypatch):
    monkeypatch.delenv("CRON_SECRET", raising=False)
    app = create_app(f"sqlite:///{tmp_path / 'open.db'}", gateway=gateway)
    assert app.test_client().get("/api/scheduler/check?secret=").status_code == 401


def test_valid_bearer_token_wins_over_wrong_query_secret(client):
    resp = client.get("/api/scheduler/check?secret=wrong",
                      headers={"Authorization": f"Bearer {SECRET}"})
    assert resp.status_code == 200


def test_valid_query_secret_wins_over_wrong_bearer_token(client):
    resp = client.get(f"/api/scheduler/check?secret={SECRET}",
                      headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 200


def test_manual_mode_by_default(client, gateway):
    resp = client.get(f"/api/scheduler/check?secret={SECRET}")

    assert resp.status_code == 200
    assert resp.get_json()["status"] == "MODALITA_MANUALE"
    assert gateway.calls == []


def test_bearer_token_accepted_and_heartbeat_exposed(client):
    resp = client.get("/api/scheduler/check", headers={"Authorization": f"Bearer {SECRET}"})
    assert resp.status_code == 200

    health = client.get("/api/health/cron").get_json()
    assert health["lastCall"] is not None


def test_check_runs_schedule_and_records_execution(app, client, gateway):
    store = app.extensions["state_store"]
    with app.app_context():
        seed_defaults(store)
        store.set("schedules-v2/schedules/default/slots", {
            day: [{"start": "00:00", "end": "24:00", "power": 4, "fan": 3}]
            for day in ("Lunedì", "Martedì", "Mercoledì", "Giovedì", "Venerdì",
                        "Sabato", "Domenica")
        })

    body = client.get(f"/api/scheduler/check?secret={SECRET}").get_json()
    app.extensions["dispatcher"].flush()

    assert body["status"] == "ACCESA"
    assert body["activeSchedule"] == {"start": "00:00", "end": "24:00", "power": 4, "fan": 3}
    assert gateway.called("ignite") == [(4,)]

    executions = client.get("/api/scheduler/executions?n=5").get_json()
    assert executions[0]["status"] == "ACCESA"
    with app.app_context():
        assert sorted(e.event_type for e in AnalyticsEvent.query.all()) == [
            "power_change", "stove_ignite"]


def test_unexpected_exception_returns_error_status(app, client, monkeypatch):
    def explode(now=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(app.extensions["scheduler_check"], "run", explode)

    resp = client.get(f"/api/scheduler/check?secret={SECRET}")

    assert resp.status_code == 200
    assert resp.get_json()["status"] == "ERRORE"


def test_pid_tuning_endpoint_empty(client):
    assert client.get("/api/pid/tuning").get_json() == []


def test_init_db_command_seeds_once(app):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["init-db"])
    second = runner.invoke(args=["init-db"])

    assert "Seeded default schedule" in first.output
    assert "nothing seeded" in second.output
    with app.app_context():
        assert app.extensions["state_store"].get("schedules-v2/mode/enabled") is True


class StartedBridge:
    def __init__(self, broker, port, on_reading=None):
        self.broker = broker
        self.running = False

    def start(self):
        self.running = True

    def stop(self):
        self.running = False


def test_background_workers_are_stopped_at_exit(tmp_path, gateway, monkeypatch):
    registered = []
    monkeypatch.setattr(app_module.atexit, "register", registered.append)
    monkeypatch.setattr(app_module, "ThermostatBridge", StartedBridge)

    app = create_app(f"sqlite:///{tmp_path / 'exit.db'}",
                     config={"MQTT_BROKER": "broker.local"}, gateway=gateway)
    bridge = app.extensions["thermostat_bridge"]
    assert bridge.running is True

    for callback in registered:
        callback()

    assert bridge.running is False
    with pytest.raises(RuntimeError):
        app.extensions["dispatcher"].spawn("late", lambda: None)
