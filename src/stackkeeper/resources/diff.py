"""Desired-versus-observed diff for each resource kind.

Every function here is deterministic and side-effect free; ``now`` is passed in
rather than read from the clock so the same inputs always produce the same
plan.
"""

from datetime import datetime, timedelta
from typing import Optional

from stackkeeper.resources.models import (
    ActionPlan,
    ActionType,
    CertificateSpec,
    CertificateState,
    DeploymentSpec,
    DeploymentState,
    DesiredSpec,
    ObservedState,
    ProxySpec,
    ProxyState,
    RolloutStatus,
    utcnow,
)

NO_OP = ActionPlan(ActionType.NO_OP, "in sync")


def diff_certificate(
    desired: CertificateSpec,
    observed: Optional[CertificateState],
    previous: Optional[CertificateState] = None,
    now: Optional[datetime] = None
) -> ActionPlan:
    """Plan certificate renewal.

    Args:
        desired: Desired certificate
        observed: Certificate currently on disk, None if none exists
        previous: Certificate recorded by the last successful commit
        now: Reference time

    Returns:
        RENEW when missing or inside the renewal window, REDEPLOY when the
        certificate changed since the last commit and a reload service is
        configured, otherwise NO_OP
    """
    now = now or utcnow()

    if observed is None:
        return ActionPlan(ActionType.RENEW, f"no certificate for {desired.domain}")

    window = timedelta(days=desired.renewal_window_days)
    remaining = observed.not_after - now
    if remaining < window:
        return ActionPlan(
            ActionType.RENEW,
            f"expires in {max(remaining.days, 0)}d, inside the {desired.renewal_window_days}d window"
        )

    if (
        desired.reload_service
        and previous is not None
        and previous.fingerprint != observed.fingerprint
    ):
        return ActionPlan(
            ActionType.REDEPLOY,
            f"certificate changed since last commit, restart {desired.reload_service}"
        )

    return NO_OP


def diff_proxy(desired: ProxySpec, observed: Optional[ProxyState]) -> ActionPlan:
    """Plan a proxy reload when the rendered config differs from the live one."""
    if observed is None:
        return ActionPlan(ActionType.RELOAD, "proxy state unknown")

    if observed.active_config_hash is None:
        return ActionPlan(ActionType.RELOAD, "no active configuration")

    if observed.rendered_config_hash != observed.active_config_hash:
        return ActionPlan(
            ActionType.RELOAD,
            f"rendered {observed.rendered_config_hash[:12]} != active {observed.active_config_hash[:12]}"
        )

    return NO_OP


def diff_deployment(desired: DeploymentSpec, observed: Optional[DeploymentState]) -> ActionPlan:
    """Plan a rolling update when image, scale or rollout health are off."""
    if observed is None:
        return ActionPlan(ActionType.UPDATE, f"service {desired.service_id} not observed")

    if desired.image_reference != observed.image_reference:
        return ActionPlan(
            ActionType.UPDATE,
            f"image {observed.image_reference} -> {desired.image_reference}"
        )

    if observed.rollout_status == RolloutStatus.FAILED:
        return ActionPlan(ActionType.UPDATE, "previous rollout failed")

    if desired.replica_count is not None and desired.replica_count != observed.replica_count:
        return ActionPlan(
            ActionType.UPDATE,
            f"replicas {observed.replica_count} -> {desired.replica_count}"
        )

    return NO_OP


def diff(
    desired: DesiredSpec,
    observed: Optional[ObservedState],
    previous: Optional[ObservedState] = None,
    now: Optional[datetime] = None
) -> ActionPlan:
    """Dispatch to the diff function for the kind of ``desired``."""
    if isinstance(desired, CertificateSpec):
        return diff_certificate(desired, observed, previous=previous, now=now)
    if isinstance(desired, ProxySpec):
        return diff_proxy(desired, observed)
    if isinstance(desired, DeploymentSpec):
        return diff_deployment(desired, observed)
    raise TypeError(f"Unsupported desired spec: {type(desired).__name__}")
