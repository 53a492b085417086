"""Constants shared by the scheduler automation."""

from __future__ import annotations

from datetime import timedelta
from enum import Enum

# State store paths
PATH_MODE = "schedules-v2/mode"
PATH_ACTIVE_SCHEDULE_ID = "schedules-v2/activeScheduleId"
PATH_SCHEDULE_SLOTS = "schedules-v2/schedules/{schedule_id}/slots/{day}"
PATH_PID_BOOST = "pidAutomation/boost"
PATH_PID_STATE = "pidAutomation/state"
PATH_PID_CONFIG = "users/{user_id}/pidAutomation"
PATH_NOTIFICATION_PREFS = "users/{user_id}/notificationPreferences"
PATH_USERS = "users"
PATH_NOTIFICATION_ERRORS = "notificationErrors"
PATH_LAST_IGNITION_INTERVAL = "scheduler/lastIgnitionInterval"
PATH_LAST_WORK_NOTIFICATION = "scheduler/lastWorkNotification"
PATH_LAST_UNEXPECTED_OFF_NOTIFICATION = "scheduler/lastUnexpectedOffNotification"
PATH_LAST_CALIBRATION = "netatmo/lastAutoCalibration"
PATH_LAST_WEATHER_REFRESH = "cron/lastWeatherRefresh"
PATH_LAST_TOKEN_CLEANUP = "cron/lastTokenCleanup"
PATH_CRON_HEALTH = "cronHealth/lastCall"
PATH_ROOM_STATUS = "netatmo/currentStatus"
PATH_STOVE_SYNC = "netatmo/stoveSync"
PATH_STOVE_STATE = "stove/state"
PATH_MAINTENANCE = "maintenance"
PATH_LOCATION = "config/location"
PATH_WEATHER_CACHE = "weather/cache"

DEFAULT_SCHEDULE_ID = "default"

# Cooldown windows
CALIBRATION_INTERVAL = timedelta(hours=12)
WEATHER_REFRESH_INTERVAL = timedelta(minutes=30)
TOKEN_CLEANUP_INTERVAL = timedelta(days=7)
WORK_NOTIFICATION_COOLDOWN = timedelta(minutes=30)
UNEXPECTED_OFF_COOLDOWN = timedelta(hours=1)
PID_CLEANUP_INTERVAL = timedelta(hours=24)
EXECUTION_LOG_RETENTION = timedelta(hours=24)
STALE_TOKEN_AGE = timedelta(days=90)
NOTIFICATION_ERROR_RETENTION = timedelta(days=30)

# Telemetry fallbacks when a level fetch fails
DEFAULT_FAN_LEVEL = 3
DEFAULT_POWER_LEVEL = 2

POWER_MIN, POWER_MAX = 1, 5
FAN_MIN, FAN_MAX = 1, 6

# PID defaults
DEFAULT_KP = 0.5
DEFAULT_KI = 0.1
DEFAULT_KD = 0.05
DEFAULT_PID_SETPOINT = 20.0
DEFAULT_PID_DT_MINUTES = 5.0
PID_DT_MIN_MINUTES = 1.0
PID_DT_MAX_MINUTES = 30.0

DEFAULT_STOVE_SYNC_TEMPERATURE = 16.0
DEFAULT_MAINTENANCE_TARGET_HOURS = 50.0
MAINTENANCE_THRESHOLDS = (80, 90, 100)

# Italian weekday names, Monday first (datetime.weekday() order)
DAY_NAMES = ("Lunedì", "Martedì", "Mercoledì", "Giovedì", "Venerdì", "Sabato", "Domenica")

SOURCE_SCHEDULER = "scheduler"
SOURCE_PID = "pid_automation"

EVENT_IGNITE = "stove_ignite"
EVENT_SHUTDOWN = "stove_shutdown"
EVENT_POWER_CHANGE = "power_change"
EVENT_FAN_CHANGE = "fan_change"

NOTIFY_SCHEDULER_IGNITION = "scheduler_ignition"
NOTIFY_SCHEDULER_SHUTDOWN = "scheduler_shutdown"
NOTIFY_STATUS_WORK = "stove_status_work"
NOTIFY_UNEXPECTED_OFF = "stove_unexpected_off"
NOTIFY_MAINTENANCE = "maintenance_{level}"


class CheckStatus(str, Enum):
    """Terminal states of one scheduler check."""

    MANUAL = "MODALITA_MANUALE"
    SEMI_MANUAL = "MODALITA_SEMI_MANUALE"
    NO_SCHEDULE = "NO_SCHEDULE"
    STATUS_UNAVAILABLE = "STATUS_UNAVAILABLE"
    MAINTENANCE_REQUIRED = "MANUTENZIONE_RICHIESTA"
    ON = "ACCESA"
    OFF = "SPENTA"
    ALREADY_ON = "ALREADY_ON"
    CONFIRMATION_FAILED = "CONFIRMATION_FAILED"
    NO_CHANGE = "NESSUN_CAMBIO"
    ERROR = "ERRORE"
