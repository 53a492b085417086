"""Open-Meteo forecast client."""

from __future__ import annotations

from typing import Any, Dict

import requests

DEFAULT_WEATHER_URL = "https://api.open-meteo.com/v1/forecast"


class WeatherClient:
    def __init__(self, base_url: str = DEFAULT_WEATHER_URL, timeout: float = 15.0):
        self.base_url = base_url
        self.timeout = timeout

    def forecast(self, latitude: float, longitude: float) -> Dict[str, Any]:
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "current": "temperature_2m,relative_humidity_2m,weather_code,wind_speed_10m",
            "daily": "temperature_2m_max,temperature_2m_min,weather_code",
            "timezone": "auto",
            "forecast_days": 5,
        }
        response = requests.get(self.base_url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()
