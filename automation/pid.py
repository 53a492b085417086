"""PID controller mapping a room temperature error to a stove power level.

The process is invoked once per cron run, so the controller memory is an
explicit value object that callers load before ``compute`` and persist after.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .const import POWER_MAX, POWER_MIN


@dataclass(frozen=True)
class ControllerMemory:
    integral: float = 0.0
    prev_error: float = 0.0
    initialized: bool = False
    last_run: Optional[int] = None       # epoch ms
    last_cleanup: Optional[int] = None   # epoch ms

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ControllerMemory":
        if not data:
            return cls()
        return cls(
            integral=float(data.get("integral") or 0.0),
            prev_error=float(data.get("prevError") or 0.0),
            initialized=bool(data.get("initialized", False)),
            last_run=data.get("lastRun"),
            last_cleanup=data.get("lastCleanup"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "integral": self.integral,
            "prevError": self.prev_error,
            "initialized": self.initialized,
            "lastRun": self.last_run,
            "lastCleanup": self.last_cleanup,
        }


class PIDController:
    """Discrete PID with integral clamping (anti-windup).

    Output is ``kp*e + ki*I + kd*D`` rounded half up and clamped to
    [output_min, output_max].
    """

    def __init__(self, kp: float, ki: float, kd: float,
                 output_min: int = POWER_MIN, output_max: int = POWER_MAX,
                 integral_limit: float = 10.0):
        self.kp = kp
        self.ki = ki
        self.kd = kd
        self.output_min = output_min
        self.output_max = output_max
        self.integral_limit = abs(integral_limit)
        self.integral = 0.0
        self.prev_error = 0.0
        self.initialized = False
        self.last_error = 0.0
        self.last_derivative = 0.0

    def get_state(self) -> ControllerMemory:
        return ControllerMemory(
            integral=self.integral,
            prev_error=self.prev_error,
            initialized=self.initialized,
        )

    def set_state(self, memory: ControllerMemory) -> None:
        self.integral = memory.integral
        self.prev_error = memory.prev_error
        self.initialized = memory.initialized

    def reset(self) -> None:
        self.set_state(ControllerMemory())

    def compute(self, setpoint: float, measured: float, dt: float) -> int:
        if dt <= 0:
            raise ValueError("dt must be positive")
        error = setpoint - measured

        self.integral += error * dt
        self.integral = max(-self.integral_limit, min(self.integral_limit, self.integral))

        # no derivative kick on the first sample
        derivative = (error - self.prev_error) / dt if self.initialized else 0.0

        raw = self.kp * error + self.ki * self.integral + self.kd * derivative
        output = math.floor(raw + 0.5)

        self.prev_error = error
        self.initialized = True
        self.last_error = error
        self.last_derivative = derivative
        return max(self.output_min, min(self.output_max, output))
