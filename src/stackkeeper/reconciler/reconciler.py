"""Reconciler: drives one resource from observed to desired state.

Each attempt walks a strict phase sequence::

    IDLE -> OBSERVING -> DIFFING -> APPLYING -> VERIFYING -> COMMITTING -> IDLE

with FAILED reachable from OBSERVING, APPLYING and VERIFYING. Adapter errors
end the attempt with a Failed record; they never escape ``reconcile``. Only a
StateError (the store itself is unusable) propagates to the caller.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from stackkeeper.adapters.base import (
    CertificateIssuer,
    OrchestratorController,
    ProxyController,
    config_hash,
)
from stackkeeper.resources.diff import diff
from stackkeeper.resources.models import (
    ActionPlan,
    ActionType,
    CertificateSpec,
    CertificateState,
    DeploymentSpec,
    DeploymentState,
    ObservedState,
    ProxySpec,
    ProxyState,
    ReconcileOutcome,
    ReconciliationRecord,
    Resource,
    RolloutStatus,
    utcnow,
)
from stackkeeper.state.store import StateStore
from stackkeeper.utils.backoff import Backoff, CircuitBreaker
from stackkeeper.utils.errors import (
    ActivationError,
    ConflictError,
    DeploymentError,
    ErrorContext,
    IssuanceError,
    OperationTimeoutError,
    ReconcileError,
    ResourceNotFoundError,
    StateError,
    error_handler,
)
from stackkeeper.utils.logging import get_logger

logger = get_logger(__name__)


class Phase(Enum):
    """Phase of a reconciliation attempt."""
    IDLE = "idle"
    OBSERVING = "observing"
    DIFFING = "diffing"
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMMITTING = "committing"
    FAILED = "failed"


# Every active phase may return to IDLE: no-op, cancellation or conflict
ALLOWED_TRANSITIONS = {
    Phase.IDLE: {Phase.OBSERVING},
    Phase.OBSERVING: {Phase.DIFFING, Phase.FAILED, Phase.IDLE},
    Phase.DIFFING: {Phase.APPLYING, Phase.IDLE},
    Phase.APPLYING: {Phase.VERIFYING, Phase.FAILED, Phase.IDLE},
    Phase.VERIFYING: {Phase.COMMITTING, Phase.FAILED, Phase.IDLE},
    Phase.COMMITTING: {Phase.IDLE},
    Phase.FAILED: {Phase.IDLE},
}


class InvalidPhaseTransition(Exception):
    """Raised when an attempt tries to skip or reorder phases."""
    pass


class AttemptCancelled(Exception):
    """Raised between phases once the cancel event is set."""
    pass


class ResourceHealth(Enum):
    """Health derived from the reconciliation log."""
    OK = "OK"
    FAILING = "FAILING"
    DEGRADED = "DEGRADED"
    NEVER_RECONCILED = "NEVER_RECONCILED"


class PhaseTracker:
    """Current phase of one attempt and the trace of phases entered."""

    def __init__(self):
        self.phase = Phase.IDLE
        self.trace: List[Phase] = [Phase.IDLE]

    def advance(self, phase: Phase) -> None:
        if phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidPhaseTransition(f"{self.phase.value} -> {phase.value}")
        self.phase = phase
        self.trace.append(phase)


@dataclass
class AdapterTimeouts:
    """Upper bounds, in seconds, for each kind of adapter call."""
    inspect: float = 30.0
    issue: float = 300.0
    validate: float = 30.0
    activate: float = 60.0
    orchestrator: float = 30.0
    rollout: float = 600.0


@dataclass
class AttemptResult:
    """Result of one call to ``Reconciler.reconcile``."""

    resource_id: str
    outcome: Optional[ReconcileOutcome] = None
    action: Optional[ActionType] = None
    reason: str = ""
    error: Optional[ReconcileError] = None
    record: Optional[ReconciliationRecord] = None
    resource: Optional[Resource] = None
    phases: List[Phase] = field(default_factory=list)
    suppressed: bool = False
    cancelled: bool = False
    coalesced: bool = False

    def is_success(self) -> bool:
        """Check if the attempt committed or found nothing to do."""
        return self.outcome in (ReconcileOutcome.SUCCESS, ReconcileOutcome.SKIPPED)

    def is_failed(self) -> bool:
        """Check if the attempt recorded a failure."""
        return self.outcome == ReconcileOutcome.FAILED

    @property
    def revision(self) -> Optional[int]:
        return self.resource.last_applied_revision if self.resource else None


class Reconciler:
    """Runs reconciliation attempts against the store and the adapters."""

    def __init__(
        self,
        store: StateStore,
        issuer: CertificateIssuer,
        proxy: ProxyController,
        orchestrator: OrchestratorController,
        timeouts: Optional[AdapterTimeouts] = None,
        breaker: Optional[CircuitBreaker] = None,
        rollout_backoff: Optional[Backoff] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize reconciler.

        Args:
            store: State store holding committed resources and records
            issuer: Certificate issuer adapter
            proxy: Proxy controller adapter
            orchestrator: Orchestrator controller adapter
            timeouts: Per-call timeouts
            breaker: Circuit breaker over consecutive failures
            rollout_backoff: Backoff used while polling rollout status
            clock: Source of the current time
            sleep: Sleep function used while polling
        """
        self.store = store
        self.issuer = issuer
        self.proxy = proxy
        self.orchestrator = orchestrator
        self.timeouts = timeouts or AdapterTimeouts()
        self.breaker = breaker or CircuitBreaker()
        self.rollout_backoff = rollout_backoff or Backoff(base_delay=2.0, max_delay=30.0)
        self.clock = clock
        self.sleep = sleep
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def is_in_flight(self, key: str) -> bool:
        """Check whether an attempt for ``key`` currently holds its lock."""
        return self._lock_for(key).locked()

    def reconcile(
        self,
        resource: Resource,
        force: bool = False,
        cancel_event: Optional[threading.Event] = None
    ) -> AttemptResult:
        """Run one reconciliation attempt.

        Args:
            resource: Resource carrying the desired spec
            force: Run even if the circuit breaker is open
            cancel_event: Checked between phases; once set the attempt stops
                without writing a record

        Returns:
            AttemptResult; ``coalesced`` is set and nothing is recorded when an
            attempt for the same resource is already in flight, here or in
            another process sharing the state store

        Raises:
            StateError: If the state store is unusable
        """
        key = resource.key
        lock = self._lock_for(key)
        if not lock.acquire(blocking=False):
            return self._coalesced(key, "in this process")

        try:
            with self.store.attempt_lock(key) as acquired:
                if not acquired:
                    return self._coalesced(key, "in another process")
                return self._attempt(resource, force, cancel_event)
        finally:
            lock.release()

    def _coalesced(self, key: str, where: str) -> AttemptResult:
        logger.info(
            f"Attempt for {key} already in flight {where}, coalescing",
            extra={"resource_id": key}
        )
        return AttemptResult(resource_id=key, coalesced=True)

    def plan(self, resource: Resource) -> Tuple[Optional[ObservedState], ActionPlan]:
        """Observe and diff without changing anything.

        Raises:
            ReconcileError: If observation fails
        """
        committed = self._load_committed(resource.key)
        previous = committed.observed_state if committed else None
        observed = self._observe(resource)
        return observed, diff(resource.desired_spec, observed, previous=previous, now=self.clock())

    def health(self, key: str) -> ResourceHealth:
        """Health of a resource from its most recent records."""
        records = self.store.records(key, limit=self.breaker.failure_threshold)
        if not records:
            return ResourceHealth.NEVER_RECONCILED
        if self.breaker.is_open(records):
            return ResourceHealth.DEGRADED
        if records[-1].outcome == ReconcileOutcome.FAILED:
            return ResourceHealth.FAILING
        return ResourceHealth.OK

    # Attempt ------------------------------------------------------------------

    def _attempt(
        self,
        resource: Resource,
        force: bool,
        cancel_event: Optional[threading.Event]
    ) -> AttemptResult:
        key = resource.key
        tracker = PhaseTracker()
        extra = {"resource_id": key, "resource_kind": resource.kind.value}

        committed = self._load_committed(key)
        expected_revision = committed.last_applied_revision if committed else 0
        previous = committed.observed_state if committed else None

        if not force:
            recent = self.store.records(key, limit=self.breaker.failure_threshold)
            if self.breaker.is_open(recent):
                logger.warning(
                    f"{key} is degraded after {self.breaker.failure_threshold} consecutive "
                    f"failures, skipping until a forced run succeeds",
                    extra=extra
                )
                return AttemptResult(resource_id=key, suppressed=True, phases=tracker.trace)

        started_at = self.clock()
        plan: Optional[ActionPlan] = None

        try:
            self._enter(tracker, Phase.OBSERVING, cancel_event, extra)
            observed = self._observe(resource)

            self._enter(tracker, Phase.DIFFING, cancel_event, extra)
            plan = diff(resource.desired_spec, observed, previous=previous, now=self.clock())

            if plan.is_noop():
                tracker.advance(Phase.IDLE)
                record = self._record(key, started_at, ReconcileOutcome.SKIPPED, plan.action, force)
                logger.info(
                    f"{key} in sync",
                    extra={**extra, "action": plan.action.value, "outcome": record.outcome.value}
                )
                return AttemptResult(
                    resource_id=key,
                    outcome=ReconcileOutcome.SKIPPED,
                    action=plan.action,
                    reason=plan.reason,
                    record=record,
                    resource=committed,
                    phases=tracker.trace,
                )

            logger.info(f"{key}: {plan.action.value} ({plan.reason})", extra={**extra, "action": plan.action.value})

            self._enter(tracker, Phase.APPLYING, cancel_event, extra)
            applied = self._apply(resource, plan)

            self._enter(tracker, Phase.VERIFYING, cancel_event, extra)
            verified = self._verify(resource, plan, observed, applied)

            self._enter(tracker, Phase.COMMITTING, cancel_event, extra)

        except AttemptCancelled:
            tracker.advance(Phase.IDLE)
            logger.info(f"Attempt for {key} cancelled", extra=extra)
            return AttemptResult(
                resource_id=key,
                action=plan.action if plan else None,
                phases=tracker.trace,
                cancelled=True,
            )

        except StateError:
            raise

        except ReconcileError as e:
            failed_in = tracker.phase
            tracker.advance(Phase.FAILED)
            action = plan.action if plan else None
            record = self._record(key, started_at, ReconcileOutcome.FAILED, action, force, error_detail=str(e))
            tracker.advance(Phase.IDLE)
            logger.error(
                f"{key} failed while {failed_in.value}: {e}",
                extra={**extra, "phase": failed_in.value, "outcome": record.outcome.value,
                       "duration": record.duration}
            )
            return AttemptResult(
                resource_id=key,
                outcome=ReconcileOutcome.FAILED,
                action=action,
                reason=plan.reason if plan else "",
                error=e,
                record=record,
                resource=committed,
                phases=tracker.trace,
            )

        candidate = resource.model_copy(update={"observed_state": verified})
        try:
            saved = self.store.save(candidate, expected_revision)
        except ConflictError as e:
            tracker.advance(Phase.IDLE)
            record = self._record(
                key, started_at, ReconcileOutcome.SKIPPED, plan.action, force,
                error_detail=f"revision conflict: {e.message}"
            )
            logger.info(f"{key} committed concurrently, abandoning attempt", extra=extra)
            return AttemptResult(
                resource_id=key,
                outcome=ReconcileOutcome.SKIPPED,
                action=plan.action,
                reason="revision conflict",
                error=e,
                record=record,
                phases=tracker.trace,
            )

        tracker.advance(Phase.IDLE)
        record = self._record(
            key, started_at, ReconcileOutcome.SUCCESS, plan.action, force,
            revision=saved.last_applied_revision
        )
        logger.info(
            f"{key} reconciled at revision {saved.last_applied_revision}",
            extra={**extra, "action": plan.action.value, "outcome": record.outcome.value,
                   "duration": record.duration}
        )
        return AttemptResult(
            resource_id=key,
            outcome=ReconcileOutcome.SUCCESS,
            action=plan.action,
            reason=plan.reason,
            record=record,
            resource=saved,
            phases=tracker.trace,
        )

    def _enter(
        self,
        tracker: PhaseTracker,
        phase: Phase,
        cancel_event: Optional[threading.Event],
        extra: Dict[str, Any]
    ) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise AttemptCancelled()
        tracker.advance(phase)
        logger.debug(f"Entering {phase.value}", extra={**extra, "phase": phase.value})

    def _load_committed(self, key: str) -> Optional[Resource]:
        try:
            return self.store.load(key)
        except ResourceNotFoundError:
            return None

    def _record(
        self,
        key: str,
        started_at: datetime,
        outcome: ReconcileOutcome,
        action: Optional[ActionType],
        forced: bool,
        error_detail: Optional[str] = None,
        revision: Optional[int] = None
    ) -> ReconciliationRecord:
        record = ReconciliationRecord(
            resource_id=key,
            started_at=started_at,
            finished_at=self.clock(),
            outcome=outcome,
            action=action,
            error_detail=error_detail,
            forced=forced,
            revision=revision,
        )
        self.store.append_record(record)
        return record

    def _call(self, key: str, operation: str, func: Callable, *args, **kwargs) -> Any:
        """Invoke an adapter, normalizing unexpected exceptions."""
        try:
            return func(*args, **kwargs)
        except ReconcileError:
            raise
        except Exception as e:
            raise error_handler.handle_exception(
                e, ErrorContext(resource_id=key, operation=operation)
            ) from e

    # Observing ----------------------------------------------------------------

    def _observe(self, resource: Resource) -> Optional[ObservedState]:
        spec = resource.desired_spec
        key = resource.key
        t = self.timeouts

        if isinstance(spec, CertificateSpec):
            return self._call(key, "inspect", self.issuer.inspect, spec.domain, timeout=t.inspect)

        if isinstance(spec, ProxySpec):
            rendered = self._call(key, "render", self.proxy.render, spec.template_path, spec.template_vars())
            active = self._call(key, "active_config_hash", self.proxy.active_config_hash, timeout=t.inspect)
            return ProxyState(rendered_config_hash=config_hash(rendered), active_config_hash=active)

        if isinstance(spec, DeploymentSpec):
            image = self._call(
                key, "current_image", self.orchestrator.current_image,
                spec.service_id, timeout=t.orchestrator
            )
            if image is None:
                raise DeploymentError(
                    f"Service not found: {spec.service_id}",
                    context=ErrorContext(resource_id=key, operation="current_image"),
                    suggestions=["Deploy the stack before reconciling it"]
                )
            replicas = self._call(
                key, "replica_count", self.orchestrator.replica_count,
                spec.service_id, timeout=t.orchestrator
            )
            status = self._call(
                key, "rollout_status", self.orchestrator.rollout_status,
                spec.service_id, timeout=t.orchestrator
            )
            return DeploymentState(image_reference=image, replica_count=replicas, rollout_status=status)

        raise TypeError(f"Unsupported desired spec: {type(spec).__name__}")

    # Applying -----------------------------------------------------------------

    def _apply(self, resource: Resource, plan: ActionPlan) -> Any:
        """Perform the planned action. Returns data the verify step checks against."""
        spec = resource.desired_spec
        key = resource.key
        t = self.timeouts

        if plan.action == ActionType.RENEW:
            issued = self._call(
                key, "issue", self.issuer.issue, spec.domain, spec.email,
                renew_before=timedelta(days=spec.renewal_window_days), timeout=t.issue
            )
            if spec.reload_service:
                self._call(
                    key, "restart_service", self.orchestrator.restart_service,
                    spec.reload_service, timeout=t.orchestrator
                )
            return issued

        if plan.action == ActionType.REDEPLOY:
            self._call(
                key, "restart_service", self.orchestrator.restart_service,
                spec.reload_service, timeout=t.orchestrator
            )
            return None

        if plan.action == ActionType.RELOAD:
            rendered = self._call(key, "render", self.proxy.render, spec.template_path, spec.template_vars())
            self._call(key, "validate", self.proxy.validate, rendered, timeout=t.validate)
            self._call(key, "activate", self.proxy.activate, rendered, timeout=t.activate)
            return config_hash(rendered)

        if plan.action == ActionType.UPDATE:
            self._call(
                key, "update_service", self.orchestrator.update_service,
                spec.service_id, spec.image_reference,
                replicas=spec.replica_count, timeout=t.orchestrator
            )
            return None

        raise ValueError(f"No apply step for {plan.action.value}")

    # Verifying ----------------------------------------------------------------

    def _verify(
        self,
        resource: Resource,
        plan: ActionPlan,
        observed: Optional[ObservedState],
        applied: Any
    ) -> ObservedState:
        """Re-observe and check the action took effect. Returns the state to commit."""
        spec = resource.desired_spec
        key = resource.key
        t = self.timeouts
        context = ErrorContext(resource_id=key, operation="verify")

        if plan.action == ActionType.RENEW:
            current: Optional[CertificateState] = self._call(
                key, "inspect", self.issuer.inspect, spec.domain, timeout=t.inspect
            )
            if current is None:
                raise IssuanceError(f"No certificate for {spec.domain} after issuance", context=context)
            if observed is not None and current.not_after <= observed.not_after:
                raise IssuanceError(
                    f"Certificate for {spec.domain} was not renewed "
                    f"(still expires {current.not_after:%Y-%m-%d})",
                    context=context
                )
            return current

        if plan.action == ActionType.REDEPLOY:
            return observed

        if plan.action == ActionType.RELOAD:
            active = self._call(key, "active_config_hash", self.proxy.active_config_hash, timeout=t.inspect)
            if active != applied:
                raise ActivationError(
                    f"Active proxy configuration {str(active)[:12]} does not match "
                    f"rendered {applied[:12]}",
                    context=context
                )
            return ProxyState(rendered_config_hash=applied, active_config_hash=active)

        if plan.action == ActionType.UPDATE:
            return self._verify_rollout(key, spec, context)

        raise ValueError(f"No verify step for {plan.action.value}")

    def _verify_rollout(self, key: str, spec: DeploymentSpec, context: ErrorContext) -> DeploymentState:
        t = self.timeouts
        status, settled = self.rollout_backoff.poll(
            lambda: self._call(
                key, "rollout_status", self.orchestrator.rollout_status,
                spec.service_id, timeout=t.orchestrator
            ),
            lambda s: s in (RolloutStatus.HEALTHY, RolloutStatus.FAILED),
            timeout=t.rollout,
            sleep=self.sleep,
        )
        if status == RolloutStatus.FAILED:
            raise DeploymentError(
                f"Rolling update of {spec.service_id} failed",
                context=context,
                suggestions=["Inspect the service tasks for crash loops or failed health checks"]
            )
        if not settled:
            raise OperationTimeoutError(
                f"Rolling update of {spec.service_id} still {status.value} after {t.rollout}s",
                context=context
            )

        image = self._call(
            key, "current_image", self.orchestrator.current_image,
            spec.service_id, timeout=t.orchestrator
        )
        if image != spec.image_reference:
            raise DeploymentError(
                f"Service {spec.service_id} runs {image}, expected {spec.image_reference}",
                context=context
            )
        replicas = self._call(
            key, "replica_count", self.orchestrator.replica_count,
            spec.service_id, timeout=t.orchestrator
        )
        return DeploymentState(image_reference=image, replica_count=replicas, rollout_status=status)
