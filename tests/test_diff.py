"""Test desired-versus-observed diffing."""

from datetime import timedelta

import pytest

from stackkeeper.resources.diff import diff, diff_certificate, diff_deployment, diff_proxy
from stackkeeper.resources.models import (
    ActionType,
    CertificateSpec,
    CertificateState,
    DeploymentSpec,
    DeploymentState,
    ProxySpec,
    ProxyState,
    RolloutStatus,
    utcnow,
)


NOW = utcnow()


def cert(days_left, fingerprint="aa01"):
    return CertificateState(
        domain="example.org",
        not_before=NOW - timedelta(days=30),
        not_after=NOW + timedelta(days=days_left),
        fingerprint=fingerprint,
    )


class TestCertificateDiff:
    """Test renewal window and post-renewal redeploy."""

    @pytest.fixture
    def spec(self):
        return CertificateSpec(domain="example.org", email="ops@example.org", renewal_window_days=30)

    def test_missing_certificate_renews(self, spec):
        plan = diff_certificate(spec, None, now=NOW)
        assert plan.action == ActionType.RENEW

    def test_inside_window_renews(self, spec):
        plan = diff_certificate(spec, cert(10), now=NOW)
        assert plan.action == ActionType.RENEW
        assert "10d" in plan.reason

    def test_outside_window_is_noop(self, spec):
        assert diff_certificate(spec, cert(40), now=NOW).is_noop()

    def test_exactly_at_window_is_noop(self, spec):
        assert diff_certificate(spec, cert(30), now=NOW).is_noop()

    def test_expired_certificate_renews(self, spec):
        plan = diff_certificate(spec, cert(-2), now=NOW)
        assert plan.action == ActionType.RENEW
        assert "0d" in plan.reason

    def test_changed_fingerprint_redeploys_with_reload_service(self):
        spec = CertificateSpec(domain="example.org", email="ops@example.org", reload_service="app_nginx")
        plan = diff_certificate(spec, cert(80, "bb02"), previous=cert(10, "aa01"), now=NOW)
        assert plan.action == ActionType.REDEPLOY
        assert "app_nginx" in plan.reason

    def test_changed_fingerprint_without_reload_service_is_noop(self, spec):
        plan = diff_certificate(spec, cert(80, "bb02"), previous=cert(10, "aa01"), now=NOW)
        assert plan.is_noop()

    def test_no_previous_commit_is_noop(self):
        spec = CertificateSpec(domain="example.org", email="ops@example.org", reload_service="app_nginx")
        assert diff_certificate(spec, cert(80), previous=None, now=NOW).is_noop()


class TestProxyDiff:
    """Test proxy reload decisions."""

    @pytest.fixture
    def spec(self):
        return ProxySpec(template_path="nginx.conf.j2")

    def test_no_active_config_reloads(self, spec):
        plan = diff_proxy(spec, ProxyState(rendered_config_hash="abc"))
        assert plan.action == ActionType.RELOAD

    def test_hash_mismatch_reloads(self, spec):
        plan = diff_proxy(spec, ProxyState(rendered_config_hash="abc", active_config_hash="def"))
        assert plan.action == ActionType.RELOAD

    def test_matching_hash_is_noop(self, spec):
        assert diff_proxy(spec, ProxyState(rendered_config_hash="abc", active_config_hash="abc")).is_noop()


class TestDeploymentDiff:
    """Test rolling update decisions."""

    @pytest.fixture
    def spec(self):
        return DeploymentSpec(service_id="app_backend", image_reference="org/backend:1.4.2", replica_count=2)

    def test_image_mismatch_updates(self, spec):
        observed = DeploymentState(image_reference="org/backend:1.4.1", replica_count=2,
                                   rollout_status=RolloutStatus.HEALTHY)
        plan = diff_deployment(spec, observed)
        assert plan.action == ActionType.UPDATE
        assert "org/backend:1.4.1 -> org/backend:1.4.2" in plan.reason

    def test_failed_rollout_updates(self, spec):
        observed = DeploymentState(image_reference="org/backend:1.4.2", replica_count=2,
                                   rollout_status=RolloutStatus.FAILED)
        assert diff_deployment(spec, observed).action == ActionType.UPDATE

    def test_replica_mismatch_updates(self, spec):
        observed = DeploymentState(image_reference="org/backend:1.4.2", replica_count=1,
                                   rollout_status=RolloutStatus.HEALTHY)
        assert diff_deployment(spec, observed).action == ActionType.UPDATE

    def test_unset_replicas_are_not_compared(self):
        spec = DeploymentSpec(service_id="app_backend", image_reference="org/backend:1.4.2")
        observed = DeploymentState(image_reference="org/backend:1.4.2", replica_count=5,
                                   rollout_status=RolloutStatus.HEALTHY)
        assert diff_deployment(spec, observed).is_noop()

    def test_in_sync_is_noop(self, spec):
        observed = DeploymentState(image_reference="org/backend:1.4.2", replica_count=2,
                                   rollout_status=RolloutStatus.HEALTHY)
        assert diff_deployment(spec, observed).is_noop()


def test_diff_dispatches_by_spec_type():
    spec = CertificateSpec(domain="example.org", email="ops@example.org")
    assert diff(spec, cert(10), now=NOW).action == ActionType.RENEW


def test_diff_rejects_unknown_spec():
    with pytest.raises(TypeError):
        diff(object(), None)


def test_diff_is_deterministic():
    spec = CertificateSpec(domain="example.org", email="ops@example.org")
    observed = cert(10)
    assert diff(spec, observed, now=NOW) == diff(spec, observed, now=NOW)
