"""Test the reconciliation state machine against in-memory adapters."""

import threading

import pytest

from conftest import make_certificate
from stackkeeper.reconciler.reconciler import (
    InvalidPhaseTransition,
    Phase,
    PhaseTracker,
    Reconciler,
    ResourceHealth,
)
from stackkeeper.resources.models import ActionType, ReconcileOutcome, RolloutStatus
from stackkeeper.state.store import FileStateStore
from stackkeeper.utils.errors import (
    ConflictError,
    DeploymentError,
    IssuanceError,
    OperationTimeoutError,
    ReconcileError,
    ResourceNotFoundError,
    StateError,
)

FULL_TRACE = [
    Phase.IDLE, Phase.OBSERVING, Phase.DIFFING, Phase.APPLYING,
    Phase.VERIFYING, Phase.COMMITTING, Phase.IDLE,
]


class TestPhaseTracker:
    """Test phase ordering."""

    def test_full_sequence(self):
        tracker = PhaseTracker()
        for phase in FULL_TRACE[1:]:
            tracker.advance(phase)
        assert tracker.trace == FULL_TRACE

    def test_skipping_a_phase_is_rejected(self):
        tracker = PhaseTracker()
        tracker.advance(Phase.OBSERVING)
        with pytest.raises(InvalidPhaseTransition):
            tracker.advance(Phase.APPLYING)

    def test_failed_not_reachable_from_diffing(self):
        tracker = PhaseTracker()
        tracker.advance(Phase.OBSERVING)
        tracker.advance(Phase.DIFFING)
        with pytest.raises(InvalidPhaseTransition):
            tracker.advance(Phase.FAILED)


class TestCertificateReconcile:
    """Test renewal, no-op and redeploy of certificates."""

    def test_renews_inside_window(self, reconciler, store, issuer, orchestrator, certificate):
        issuer.certificates["example.org"] = make_certificate(days_left=10)

        result = reconciler.reconcile(certificate)

        assert result.outcome == ReconcileOutcome.SUCCESS
        assert result.action == ActionType.RENEW
        assert result.phases == FULL_TRACE
        assert result.revision == 1
        assert issuer.calls.count("issue") == 1
        assert ("restart_service", "app_nginx") in orchestrator.calls

        committed = store.load(certificate.key)
        assert committed.last_applied_revision == 1
        assert committed.observed_state.fingerprint == "renewed01"
        assert store.last_record(certificate.key).revision == 1

    def test_outside_window_is_noop(self, reconciler, store, issuer, orchestrator, certificate):
        issuer.certificates["example.org"] = make_certificate(days_left=40)

        result = reconciler.reconcile(certificate)

        assert result.outcome == ReconcileOutcome.SKIPPED
        assert result.action == ActionType.NO_OP
        assert result.phases == [Phase.IDLE, Phase.OBSERVING, Phase.DIFFING, Phase.IDLE]
        assert "issue" not in issuer.calls
        assert orchestrator.calls == []
        with pytest.raises(ResourceNotFoundError):
            store.load(certificate.key)
        assert [r.outcome for r in store.records(certificate.key)] == [ReconcileOutcome.SKIPPED]

    def test_second_run_is_noop(self, reconciler, store, issuer, certificate):
        issuer.certificates["example.org"] = make_certificate(days_left=10)
        reconciler.reconcile(certificate)

        second = reconciler.reconcile(certificate)

        assert second.outcome == ReconcileOutcome.SKIPPED
        assert issuer.calls.count("issue") == 1
        assert store.load(certificate.key).last_applied_revision == 1

    def test_issuance_failure_records_failed(self, reconciler, store, issuer, certificate):
        issuer.fail = IssuanceError("Certificate authority rate limit reached")

        result = reconciler.reconcile(certificate)

        assert result.outcome == ReconcileOutcome.FAILED
        assert isinstance(result.error, IssuanceError)
        assert result.phases[-3:] == [Phase.APPLYING, Phase.FAILED, Phase.IDLE]
        last = store.last_record(certificate.key)
        assert last.outcome == ReconcileOutcome.FAILED
        assert "rate limit" in last.error_detail
        with pytest.raises(ResourceNotFoundError):
            store.load(certificate.key)

    def test_certificate_changed_since_commit_redeploys(self, reconciler, store, issuer, orchestrator, certificate):
        issuer.certificates["example.org"] = make_certificate(days_left=10, fingerprint="old")
        reconciler.reconcile(certificate)
        orchestrator.calls.clear()

        # Renewed out of band, e.g. by certbot's own timer
        issuer.certificates["example.org"] = make_certificate(days_left=89, fingerprint="new")
        result = reconciler.reconcile(certificate)

        assert result.action == ActionType.REDEPLOY
        assert result.outcome == ReconcileOutcome.SUCCESS
        assert orchestrator.calls == [("restart_service", "app_nginx")]
        assert store.load(certificate.key).observed_state.fingerprint == "new"

    def test_unrenewed_certificate_fails_verification(self, reconciler, issuer, certificate):
        stale = make_certificate(days_left=10)
        issuer.certificates["example.org"] = stale

        def issue_without_renewing(domain, email, **kwargs):
            issuer.calls.append("issue")
            return stale

        issuer.issue = issue_without_renewing
        result = reconciler.reconcile(certificate)

        assert result.outcome == ReconcileOutcome.FAILED
        assert Phase.VERIFYING in result.phases
        assert "not renewed" in str(result.error)


class TestProxyReconcile:
    """Test render, validate and activate ordering."""

    def test_reload_order(self, reconciler, store, proxy, proxy_config):
        result = reconciler.reconcile(proxy_config)

        assert result.outcome == ReconcileOutcome.SUCCESS
        assert result.action == ActionType.RELOAD
        assert proxy.calls == [
            "render", "active_config_hash",
            "render", "validate", "activate",
            "active_config_hash",
        ]
        state = store.load(proxy_config.key).observed_state
        assert state.rendered_config_hash == state.active_config_hash

    def test_validation_failure_never_activates(self, reconciler, store, proxy, proxy_config):
        proxy.fail_validate = True

        result = reconciler.reconcile(proxy_config)

        assert result.outcome == ReconcileOutcome.FAILED
        assert "activate" not in proxy.calls
        assert proxy.active is None
        with pytest.raises(ResourceNotFoundError):
            store.load(proxy_config.key)

    def test_activation_failure_commits_nothing(self, reconciler, store, proxy, proxy_config):
        proxy.fail_activate = True

        result = reconciler.reconcile(proxy_config)

        assert result.outcome == ReconcileOutcome.FAILED
        with pytest.raises(ResourceNotFoundError):
            store.load(proxy_config.key)

    def test_in_sync_proxy_is_noop(self, reconciler, proxy, proxy_config):
        reconciler.reconcile(proxy_config)
        proxy.calls.clear()

        result = reconciler.reconcile(proxy_config)

        assert result.outcome == ReconcileOutcome.SKIPPED
        assert "activate" not in proxy.calls


class TestDeploymentReconcile:
    """Test rolling updates."""

    def test_update_to_desired_image(self, reconciler, store, orchestrator, deployment):
        result = reconciler.reconcile(deployment)

        assert result.outcome == ReconcileOutcome.SUCCESS
        assert result.action == ActionType.UPDATE
        assert orchestrator.calls == [("update_service", "app_backend", "org/backend:1.4.2")]
        state = store.load(deployment.key).observed_state
        assert state.image_reference == "org/backend:1.4.2"
        assert state.rollout_status == RolloutStatus.HEALTHY

    def test_failed_rollout(self, reconciler, store, orchestrator, deployment):
        orchestrator.rollout_result = RolloutStatus.FAILED

        result = reconciler.reconcile(deployment)

        assert result.outcome == ReconcileOutcome.FAILED
        assert isinstance(result.error, DeploymentError)
        with pytest.raises(ResourceNotFoundError):
            store.load(deployment.key)

    def test_rollout_timeout(self, reconciler, orchestrator, deployment):
        orchestrator.rollout_result = RolloutStatus.IN_PROGRESS

        result = reconciler.reconcile(deployment)

        assert result.outcome == ReconcileOutcome.FAILED
        assert isinstance(result.error, OperationTimeoutError)

    def test_missing_service_fails_while_observing(self, reconciler, orchestrator, deployment):
        del orchestrator.services["app_backend"]

        result = reconciler.reconcile(deployment)

        assert result.outcome == ReconcileOutcome.FAILED
        assert result.phases == [Phase.IDLE, Phase.OBSERVING, Phase.FAILED, Phase.IDLE]
        assert orchestrator.calls == []

    def test_unexpected_adapter_exception_is_normalized(self, reconciler, orchestrator, deployment):
        orchestrator.fail_update = RuntimeError("socket closed")

        result = reconciler.reconcile(deployment)

        assert result.outcome == ReconcileOutcome.FAILED
        assert isinstance(result.error, ReconcileError)
        assert "socket closed" in result.record.error_detail


class TestConcurrency:
    """Test compare-and-swap, coalescing and cancellation."""

    def test_concurrent_commit_abandons_attempt(self, reconciler, store, issuer, certificate):
        issuer.certificates["example.org"] = make_certificate(days_left=10)
        issuer.on_issue = lambda: store.save(certificate, expected_revision=0)

        result = reconciler.reconcile(certificate)

        assert result.outcome == ReconcileOutcome.SKIPPED
        assert isinstance(result.error, ConflictError)
        assert store.last_record(certificate.key).error_detail.startswith("revision conflict")
        # The concurrent commit wins
        assert store.load(certificate.key).last_applied_revision == 1
        assert store.load(certificate.key).observed_state is None

    def test_second_attempt_while_in_flight_is_coalesced(self, reconciler, store, orchestrator, deployment):
        orchestrator.gate = threading.Event()
        results = []
        worker = threading.Thread(target=lambda: results.append(reconciler.reconcile(deployment)))
        worker.start()
        assert orchestrator.entered.wait(5)

        assert reconciler.is_in_flight(deployment.key)
        coalesced = reconciler.reconcile(deployment)

        orchestrator.gate.set()
        worker.join(5)

        assert coalesced.coalesced
        assert coalesced.record is None
        assert results[0].outcome == ReconcileOutcome.SUCCESS
        assert len(store.records(deployment.key)) == 1
        assert len(orchestrator.calls) == 1

    def test_attempt_in_other_reconciler_on_same_state_dir_is_coalesced(
        self, tmp_path, reconciler, store, issuer, proxy, orchestrator, deployment
    ):
        # A second store object stands in for another process sharing state_dir
        other = Reconciler(FileStateStore(str(tmp_path / "state")), issuer, proxy, orchestrator)
        orchestrator.gate = threading.Event()
        results = []
        worker = threading.Thread(target=lambda: results.append(reconciler.reconcile(deployment)))
        worker.start()
        assert orchestrator.entered.wait(5)

        coalesced = other.reconcile(deployment)

        orchestrator.gate.set()
        worker.join(5)

        assert coalesced.coalesced
        assert results[0].outcome == ReconcileOutcome.SUCCESS
        assert len(orchestrator.calls) == 1
        assert len(store.records(deployment.key)) == 1

        # Released once the first attempt finishes
        assert other.reconcile(deployment).outcome == ReconcileOutcome.SKIPPED

    def test_cancel_before_start_writes_nothing(self, reconciler, store, deployment):
        cancel = threading.Event()
        cancel.set()

        result = reconciler.reconcile(deployment, cancel_event=cancel)

        assert result.cancelled
        assert result.outcome is None
        assert store.records(deployment.key) == []

    def test_cancel_between_phases(self, reconciler, store, orchestrator, deployment):
        cancel = threading.Event()
        orchestrator.on_update = cancel.set

        result = reconciler.reconcile(deployment, cancel_event=cancel)

        assert result.cancelled
        assert result.phases[-2:] == [Phase.APPLYING, Phase.IDLE]
        assert store.records(deployment.key) == []
        with pytest.raises(ResourceNotFoundError):
            store.load(deployment.key)


class TestCircuitBreaker:
    """Test degraded resources and forced runs."""

    def test_suppressed_after_consecutive_failures(self, reconciler, store, issuer, certificate):
        issuer.fail = IssuanceError("ACME challenge failed")
        for _ in range(3):
            assert reconciler.reconcile(certificate).is_failed()
        assert reconciler.health(certificate.key) == ResourceHealth.DEGRADED

        suppressed = reconciler.reconcile(certificate)

        assert suppressed.suppressed
        assert suppressed.record is None
        assert issuer.calls.count("issue") == 3
        assert len(store.records(certificate.key)) == 3

    def test_forced_run_closes_breaker(self, reconciler, store, issuer, certificate):
        issuer.fail = IssuanceError("ACME challenge failed")
        for _ in range(3):
            reconciler.reconcile(certificate)
        issuer.fail = None

        forced = reconciler.reconcile(certificate, force=True)

        assert forced.outcome == ReconcileOutcome.SUCCESS
        assert store.last_record(certificate.key).forced
        assert reconciler.health(certificate.key) == ResourceHealth.OK
        assert not reconciler.reconcile(certificate).suppressed

    def test_health_states(self, reconciler, issuer, certificate):
        assert reconciler.health(certificate.key) == ResourceHealth.NEVER_RECONCILED

        issuer.fail = IssuanceError("ACME challenge failed")
        reconciler.reconcile(certificate)
        assert reconciler.health(certificate.key) == ResourceHealth.FAILING


def test_plan_does_not_mutate(reconciler, store, issuer, certificate):
    issuer.certificates["example.org"] = make_certificate(days_left=10)

    observed, plan = reconciler.plan(certificate)

    assert plan.action == ActionType.RENEW
    assert observed.fingerprint == "aa01"
    assert "issue" not in issuer.calls
    assert store.records(certificate.key) == []


def test_state_error_propagates(tmp_path, issuer, proxy, orchestrator, certificate):
    class BrokenStore(FileStateStore):
        def append_record(self, record):
            raise StateError("disk full")

    reconciler = Reconciler(BrokenStore(str(tmp_path / "state")), issuer, proxy, orchestrator)
    issuer.certificates["example.org"] = make_certificate(days_left=40)

    with pytest.raises(StateError):
        reconciler.reconcile(certificate)
