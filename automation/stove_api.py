"""Client for the stove vendor's cloud JSON API.

Every call is an independent HTTP GET; timeouts are retried, any other
failure raises immediately.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import requests

from .const import FAN_MAX, FAN_MIN, POWER_MAX, POWER_MIN

_LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://wsthermorossi.cloudwinet.it/WiNetStove.svc/json"
DEFAULT_TIMEOUT = 20.0
DEFAULT_RETRIES = 2


class StoveApiError(Exception):
    """Raised when the stove API cannot be reached or answers badly."""


class StoveTimeoutError(StoveApiError):
    pass


class StoveState(str, Enum):
    OFF = "OFF"
    IGNITING = "IGNITING"
    RUNNING = "RUNNING"
    ERROR = "ERROR"
    STANDBY = "STANDBY"
    UNKNOWN = "UNKNOWN"

    @property
    def is_on(self) -> bool:
        return self in (StoveState.IGNITING, StoveState.RUNNING)


# checked in order; the vendor reports free text such as "WORK 1", "START 2", "Spento"
_STATE_KEYWORDS = (
    (StoveState.ERROR, ("ERROR", "ALARM", "ALLARME")),
    (StoveState.RUNNING, ("WORK", "MODULATION")),
    (StoveState.IGNITING, ("START", "ACCENSIONE")),
    (StoveState.STANDBY, ("STANDBY", "WAIT", "CLEAN")),
    (StoveState.OFF, ("OFF", "SPENT")),
)


def parse_status(description: Optional[str]) -> StoveState:
    """Map the vendor's status description to a StoveState."""
    if not description:
        return StoveState.UNKNOWN
    text = description.upper()
    for state, keywords in _STATE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return state
    return StoveState.UNKNOWN


@dataclass(frozen=True)
class StoveStatus:
    description: str
    state: StoveState
    error_code: int = 0
    error_description: str = ""


class StoveApi:
    def __init__(self, api_key: str, base_url: str = DEFAULT_BASE_URL,
                 timeout: float = DEFAULT_TIMEOUT, retries: int = DEFAULT_RETRIES):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries

    def _url(self, action: str, argument: Any = None) -> str:
        url = f"{self.base_url}/{action}/{self.api_key}"
        if argument is not None:
            url += f";{argument}"
        return url

    def _call(self, action: str, argument: Any = None) -> Dict[str, Any]:
        url = self._url(action, argument)
        for attempt in range(self.retries + 1):
            try:
                response = requests.get(url, timeout=self.timeout)
            except requests.Timeout as err:
                if attempt < self.retries:
                    _LOGGER.info("Stove API %s timed out (attempt %d/%d), retrying",
                                 action, attempt + 1, self.retries + 1)
                    continue
                raise StoveTimeoutError(f"{action} timed out after {attempt + 1} attempts") from err
            except requests.RequestException as err:
                raise StoveApiError(f"{action} failed: {err}") from err

            if response.status_code != 200:
                raise StoveApiError(f"{action} returned HTTP {response.status_code}")
            try:
                return response.json()
            except ValueError as err:
                raise StoveApiError(f"{action} returned invalid JSON") from err
        raise StoveApiError(f"{action} failed")

    def get_status(self) -> StoveStatus:
        data = self._call("GetStatus")
        description = data.get("StatusDescription") or "unknown"
        return StoveStatus(
            description=description,
            state=parse_status(description),
            error_code=int(data.get("Error") or 0),
            error_description=data.get("ErrorDescription") or "",
        )

    def _get_level(self, action: str) -> Optional[int]:
        result = self._call(action).get("Result")
        return int(result) if result is not None else None

    def get_fan_level(self) -> Optional[int]:
        return self._get_level("GetFanLevel")

    def get_power_level(self) -> Optional[int]:
        return self._get_level("GetPower")

    def ignite(self, power: Optional[int] = None) -> Dict[str, Any]:
        # Ignit takes no level; callers apply the power with set_power_level
        if power is not None:
            _check_range("power", power, POWER_MIN, POWER_MAX)
        return self._call("Ignit")

    def shutdown(self) -> Dict[str, Any]:
        return self._call("Shutdown")

    def set_power_level(self, level: int) -> Dict[str, Any]:
        _check_range("power", level, POWER_MIN, POWER_MAX)
        return self._call("SetPower", level)

    def set_fan_level(self, level: int) -> Dict[str, Any]:
        _check_range("fan", level, FAN_MIN, FAN_MAX)
        return self._call("SetFanLevel", level)


def _check_range(name, value, low, high):
    if not low <= int(value) <= high:
        raise ValueError(f"{name} level must be between {low} and {high}, got {value}")
