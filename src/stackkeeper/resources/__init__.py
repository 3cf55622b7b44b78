"""Resource model: desired specs, observed state and diffing."""

from .models import (
    ActionPlan,
    ActionType,
    CertificateSpec,
    CertificateState,
    DeploymentSpec,
    DeploymentState,
    ProxySpec,
    ProxyState,
    ReconcileOutcome,
    ReconciliationRecord,
    Resource,
    ResourceKind,
    RolloutStatus,
    resource_key,
)
from .diff import diff, diff_certificate, diff_deployment, diff_proxy

__all__ = [
    "ActionPlan",
    "ActionType",
    "CertificateSpec",
    "CertificateState",
    "DeploymentSpec",
    "DeploymentState",
    "ProxySpec",
    "ProxyState",
    "ReconcileOutcome",
    "ReconciliationRecord",
    "Resource",
    "ResourceKind",
    "RolloutStatus",
    "resource_key",
    "diff",
    "diff_certificate",
    "diff_deployment",
    "diff_proxy",
]
