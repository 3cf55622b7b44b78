"""Periodic and event-driven triggering of reconciliation attempts."""

from .scheduler import DEFAULT_EVENT_RULES, EventRule, Scheduler

__all__ = [
    "DEFAULT_EVENT_RULES",
    "EventRule",
    "Scheduler",
]
