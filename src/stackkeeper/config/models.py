"""Pydantic models for configuration schema."""

import os
import shlex
from datetime import timedelta
from typing import List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stackkeeper.reconciler.reconciler import AdapterTimeouts


class ScheduleConfig(BaseModel):
    """Periodic trigger configuration."""

    model_config = ConfigDict(extra="forbid")

    interval_hours: float = Field(24, gt=0, description="Hours between periodic attempts")
    jitter: float = Field(0.1, ge=0, lt=1, description="Fraction by which each period varies")
    max_workers: int = Field(4, ge=1, le=64, description="Concurrent attempts")

    @property
    def interval(self) -> timedelta:
        return timedelta(hours=self.interval_hours)


class TimeoutsConfig(BaseModel):
    """Adapter call timeouts in seconds."""

    model_config = ConfigDict(extra="forbid")

    inspect: float = Field(30, gt=0)
    issue: float = Field(300, gt=0)
    validate_: float = Field(30, gt=0, alias="validate")
    activate: float = Field(60, gt=0)
    orchestrator: float = Field(30, gt=0)
    rollout: float = Field(600, gt=0)

    def to_adapter_timeouts(self) -> AdapterTimeouts:
        return AdapterTimeouts(
            inspect=self.inspect,
            issue=self.issue,
            validate=self.validate_,
            activate=self.activate,
            orchestrator=self.orchestrator,
            rollout=self.rollout,
        )


class ReconcilerConfig(BaseModel):
    """Reconciler failure policy and timeouts."""

    model_config = ConfigDict(extra="forbid")

    max_attempts_per_window: int = Field(
        3, ge=1, description="Consecutive failures before a resource is degraded"
    )
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)


TRUE_VALUES = {"1", "true", "yes", "on"}


class EnvironmentSettings(BaseModel):
    """Deployment-specific settings and credentials read from the environment."""

    acme_server: Optional[str] = None
    acme_eab_kid: Optional[str] = None
    acme_eab_hmac_key: Optional[str] = None
    certbot_staging: bool = False
    letsencrypt_dir: str = "/etc/letsencrypt"
    docker_url: Optional[str] = None
    proxy_config_path: str = "/etc/nginx/nginx.conf"
    proxy_reload_command: Optional[List[str]] = None
    proxy_validate_command: Optional[List[str]] = None
    proxy_health_url: Optional[str] = None

    @field_validator("proxy_reload_command", "proxy_validate_command", mode="before")
    @classmethod
    def split_command(cls, v):
        """Accept commands as a single shell-quoted string."""
        if isinstance(v, str):
            return shlex.split(v) or None
        return v

    @property
    def live_dir(self) -> str:
        return os.path.join(self.letsencrypt_dir, "live")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EnvironmentSettings":
        """Build settings from ``STACKKEEPER_*`` variables.

        Args:
            environ: Mapping to read, defaults to ``os.environ``
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(f"STACKKEEPER_{name.upper()}")
            if raw is None or raw == "":
                continue
            if name == "certbot_staging":
                values[name] = raw.strip().lower() in TRUE_VALUES
            else:
                values[name] = raw
        return cls(**values)
