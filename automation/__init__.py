"""Scheduler automation for the pellet stove."""

from .reconciler import CheckResult, SchedulerCheck, SchedulerSettings

__all__ = ["CheckResult", "SchedulerCheck", "SchedulerSettings"]
