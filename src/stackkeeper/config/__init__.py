"""Configuration management for stackkeeper."""

from .models import (
    EnvironmentSettings,
    ReconcilerConfig,
    ScheduleConfig,
    TimeoutsConfig,
)
from .parser import Config, ConfigValidationError

__all__ = [
    "EnvironmentSettings",
    "ReconcilerConfig",
    "ScheduleConfig",
    "TimeoutsConfig",
    "Config",
    "ConfigValidationError",
]
