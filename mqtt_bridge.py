# mqtt_bridge.py
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone

import paho.mqtt.client as mqtt

_LOGGER = logging.getLogger(__name__)

DEFAULT_PORT = 1883

COMMAND_CALIBRATE = "calibrate"
COMMAND_RESUME_SCHEDULE = "resume_schedule"


class ThermostatBridge:
    """Room thermostats over MQTT.

    Thermostats publish ``thermostat/<room>/temperature`` and
    ``thermostat/<room>/state``; we publish setpoints and commands back.
    ``on_reading(room_id, reading)`` is called for every temperature update.
    """

    def __init__(self, broker, port=DEFAULT_PORT, client_id="stove-scheduler", on_reading=None):
        self.broker = broker
        self.port = port
        self.on_reading = on_reading

        # rooms[room_id] = {temperature, setpoint, heating, updated_at}
        self.rooms = defaultdict(
            lambda: {
                "temperature": None,
                "setpoint": None,
                "heating": False,
                "updated_at": None,
            }
        )

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message

    def start(self):
        self.client.connect(self.broker, self.port, 60)
        self.client.loop_start()

    def stop(self):
        self.client.loop_stop()
        self.client.disconnect()

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        _LOGGER.info("Connected to MQTT broker %s, rc=%s", self.broker, reason_code)

        # Wildcard so new thermostats just work
        client.subscribe("thermostat/+/temperature")
        client.subscribe("thermostat/+/state")

    def _topic_room_id(self, topic: str):
        # expected: thermostat/<id>/<leaf>
        parts = topic.split("/")
        if len(parts) >= 3 and parts[0] == "thermostat":
            return parts[1]
        return None

    def on_message(self, client, userdata, msg):
        room_id = self._topic_room_id(msg.topic)
        if not room_id:
            return

        leaf = msg.topic.split("/")[-1]
        try:
            data = json.loads(msg.payload)
        except (TypeError, ValueError):
            _LOGGER.warning("Ignoring malformed payload on %s", msg.topic)
            return
        if not isinstance(data, dict):
            return

        room = self.rooms[room_id]
        if leaf == "temperature":
            temperature = data.get("temperature")
            if not isinstance(temperature, (int, float)) or isinstance(temperature, bool):
                _LOGGER.warning("Ignoring non-numeric temperature on %s", msg.topic)
                return
            room["temperature"] = float(temperature)
            room["updated_at"] = datetime.now(timezone.utc)
            if self.on_reading:
                try:
                    self.on_reading(room_id, dict(room))
                except Exception:
                    _LOGGER.exception("Failed to store reading for room %s", room_id)

        elif leaf == "state":
            room["setpoint"] = data.get("setpoint")
            room["heating"] = bool(data.get("heating"))

    def publish_setpoint(self, room_id: str, value: float):
        self.client.publish(
            f"thermostat/{room_id}/setpoint",
            float(value),
            qos=1,
            retain=True,
        )

    def publish_command(self, room_id: str, command: str):
        self.client.publish(f"thermostat/{room_id}/command", command, qos=1)

    def get_room(self, room_id: str):
        return self.rooms.get(room_id)
