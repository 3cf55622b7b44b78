"""Resource, desired spec, observed state and reconciliation record models."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ResourceKind(str, Enum):
    """Kinds of infrastructure under management."""

    CERTIFICATE = "certificate"
    PROXY_CONFIG = "proxy_config"
    SERVICE_DEPLOYMENT = "service_deployment"


class RolloutStatus(str, Enum):
    """Rolling update status reported by the orchestrator."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    HEALTHY = "healthy"
    FAILED = "failed"


class ReconcileOutcome(str, Enum):
    """Outcome of one reconciliation attempt."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ActionType(str, Enum):
    """Remediation implied by a diff."""

    NO_OP = "no_op"
    RENEW = "renew"
    REDEPLOY = "redeploy"
    RELOAD = "reload"
    UPDATE = "update"


@dataclass(frozen=True)
class ActionPlan:
    """Result of diffing desired against observed state."""

    action: ActionType
    reason: str = ""

    def is_noop(self) -> bool:
        """Check if nothing needs to be applied."""
        return self.action == ActionType.NO_OP


def _validate_identifier(value: str, field_name: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    if "/" in value or value != value.strip():
        raise ValueError(f"{field_name} must not contain '/' or surrounding whitespace: {value!r}")
    return value


# Desired specs ---------------------------------------------------------------


class CertificateSpec(BaseModel):
    """Desired certificate for a domain."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    domain: str = Field(..., min_length=1, max_length=253, description="Domain name")
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+$", description="Registration contact")
    renewal_window_days: int = Field(30, ge=1, le=365, description="Renew this close to expiry")
    reload_service: Optional[str] = Field(
        None, description="Orchestrator service restarted after the certificate changes"
    )

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        """Validate domain name shape."""
        _validate_identifier(v, "domain")
        labels = v.rstrip(".").split(".")
        if len(labels) < 2 or any(not label for label in labels):
            raise ValueError(f"Invalid domain name: {v}")
        return v.lower()


class ProxySpec(BaseModel):
    """Desired reverse-proxy configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field("nginx", min_length=1, description="Proxy resource id")
    template_path: str = Field(..., min_length=1, description="Path to the config template")
    targets: Dict[str, str] = Field(
        default_factory=dict, description="Route name -> upstream host:port"
    )
    server_names: List[str] = Field(default_factory=list, description="Served host names")
    vars: Dict[str, Any] = Field(default_factory=dict, description="Extra template variables")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_identifier(v, "name")

    @field_validator("targets")
    @classmethod
    def validate_targets(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Validate upstream addresses."""
        for route, upstream in v.items():
            host, sep, port = upstream.rpartition(":")
            if not sep or not host or not port.isdigit():
                raise ValueError(f"Target '{route}' must be host:port, got: {upstream}")
        return v

    def template_vars(self) -> Dict[str, Any]:
        """Variables passed to the template renderer."""
        return {
            **self.vars,
            "name": self.name,
            "targets": dict(sorted(self.targets.items())),
            "server_names": list(self.server_names),
        }


class DeploymentSpec(BaseModel):
    """Desired image (and optionally scale) of an orchestrator service."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    service_id: str = Field(..., min_length=1, description="Orchestrator service name")
    image_reference: str = Field(..., min_length=1, description="Image name and tag/digest")
    replica_count: Optional[int] = Field(None, ge=0, description="Desired replicas")

    @field_validator("service_id")
    @classmethod
    def validate_service_id(cls, v: str) -> str:
        return _validate_identifier(v, "service_id")

    @field_validator("image_reference")
    @classmethod
    def validate_image_reference(cls, v: str) -> str:
        if any(ch.isspace() for ch in v):
            raise ValueError(f"Image reference must not contain whitespace: {v!r}")
        return v


# Observed state ---------------------------------------------------------------


class CertificateState(BaseModel):
    """Certificate as read back from the issuer's storage."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    domain: str
    issuer: str = ""
    not_before: datetime
    not_after: datetime
    fingerprint: str


class ProxyState(BaseModel):
    """Hashes of the rendered and the live proxy configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rendered_config_hash: str
    active_config_hash: Optional[str] = None


class DeploymentState(BaseModel):
    """Service as reported by the orchestrator."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    image_reference: str
    replica_count: Optional[int] = None
    rollout_status: RolloutStatus = RolloutStatus.PENDING


DesiredSpec = Union[CertificateSpec, ProxySpec, DeploymentSpec]
ObservedState = Union[CertificateState, ProxyState, DeploymentState]

SPEC_TYPES = {
    ResourceKind.CERTIFICATE: CertificateSpec,
    ResourceKind.PROXY_CONFIG: ProxySpec,
    ResourceKind.SERVICE_DEPLOYMENT: DeploymentSpec,
}

STATE_TYPES = {
    ResourceKind.CERTIFICATE: CertificateState,
    ResourceKind.PROXY_CONFIG: ProxyState,
    ResourceKind.SERVICE_DEPLOYMENT: DeploymentState,
}


def resource_key(kind: ResourceKind, resource_id: str) -> str:
    """Store key of a resource, unique across kinds."""
    return f"{kind.value}/{resource_id}"


class Resource(BaseModel):
    """A named infrastructure unit under management."""

    id: str = Field(..., description="Stable identifier, unique within its kind")
    kind: ResourceKind = Field(..., description="Resource kind")
    desired_spec: DesiredSpec = Field(..., description="Externally supplied target")
    observed_state: Optional[ObservedState] = Field(
        None, description="Snapshot from the last committed reconciliation"
    )
    last_applied_revision: int = Field(0, ge=0, description="Committed revision counter")
    updated_at: Optional[datetime] = Field(None, description="Last commit time")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        return _validate_identifier(v, "id")

    @model_validator(mode="before")
    @classmethod
    def coerce_kind_models(cls, data: Any) -> Any:
        """Parse spec and state dictionaries with the model for ``kind``."""
        if not isinstance(data, dict) or "kind" not in data:
            return data
        kind = ResourceKind(data["kind"])
        data = dict(data)
        if isinstance(data.get("desired_spec"), dict):
            data["desired_spec"] = SPEC_TYPES[kind](**data["desired_spec"])
        if isinstance(data.get("observed_state"), dict):
            data["observed_state"] = STATE_TYPES[kind](**data["observed_state"])
        return data

    @model_validator(mode="after")
    def validate_kind_models(self):
        """Validate spec and state types match the resource kind."""
        if not isinstance(self.desired_spec, SPEC_TYPES[self.kind]):
            raise ValueError(f"desired_spec does not match kind {self.kind.value}")
        if self.observed_state is not None and not isinstance(
            self.observed_state, STATE_TYPES[self.kind]
        ):
            raise ValueError(f"observed_state does not match kind {self.kind.value}")
        return self

    @property
    def key(self) -> str:
        """Store key, ``<kind>/<id>``."""
        return resource_key(self.kind, self.id)

    @classmethod
    def from_spec(cls, spec: DesiredSpec) -> "Resource":
        """Create an uncommitted resource for a desired spec."""
        if isinstance(spec, CertificateSpec):
            return cls(id=spec.domain, kind=ResourceKind.CERTIFICATE, desired_spec=spec)
        if isinstance(spec, ProxySpec):
            return cls(id=spec.name, kind=ResourceKind.PROXY_CONFIG, desired_spec=spec)
        if isinstance(spec, DeploymentSpec):
            return cls(id=spec.service_id, kind=ResourceKind.SERVICE_DEPLOYMENT, desired_spec=spec)
        raise TypeError(f"Unsupported desired spec: {type(spec).__name__}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resource":
        """Create Resource from dictionary."""
        return cls.model_validate(data)


class ReconciliationRecord(BaseModel):
    """One reconciliation attempt. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    resource_id: str = Field(..., description="Resource key")
    started_at: datetime
    finished_at: datetime
    outcome: ReconcileOutcome
    action: Optional[ActionType] = None
    error_detail: Optional[str] = None
    forced: bool = False
    revision: Optional[int] = Field(None, description="Revision committed by this attempt")

    @property
    def duration(self) -> float:
        """Attempt duration in seconds."""
        return (self.finished_at - self.started_at).total_seconds()
