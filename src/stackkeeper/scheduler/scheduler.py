"""Scheduler that decides when reconciliation attempts run."""

import random
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_for
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from stackkeeper.reconciler.reconciler import AttemptResult, Reconciler
from stackkeeper.resources.models import ReconcileOutcome, Resource, ResourceKind, utcnow
from stackkeeper.utils.backoff import jittered
from stackkeeper.utils.errors import ResourceNotFoundError, StateError
from stackkeeper.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EventRule:
    """A successful attempt on ``source_kind`` triggers every ``target_kind`` resource."""
    source_kind: ResourceKind
    target_kind: ResourceKind


# A new backend rollout can change upstream addresses the proxy points at
DEFAULT_EVENT_RULES = (
    EventRule(ResourceKind.SERVICE_DEPLOYMENT, ResourceKind.PROXY_CONFIG),
)


class Scheduler:
    """Triggers attempts periodically and on events, one in flight per resource."""

    def __init__(
        self,
        reconciler: Reconciler,
        resources: Iterable[Resource],
        max_workers: int = 4,
        interval: timedelta = timedelta(hours=24),
        jitter: float = 0.1,
        event_rules: Optional[Iterable[EventRule]] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None
    ):
        """Initialize scheduler.

        Args:
            reconciler: Reconciler that runs the attempts
            resources: Resources to keep reconciled
            max_workers: Maximum attempts running at once
            interval: Period between attempts for each resource
            jitter: Fraction by which each period is randomized
            event_rules: Cross-resource triggers, defaults to DEFAULT_EVENT_RULES
            clock: Source of the current time
            rng: Random source for jitter
        """
        self.reconciler = reconciler
        self.resources: Dict[str, Resource] = {r.key: r for r in resources}
        self.interval = interval
        self.jitter = jitter
        self.event_rules = list(DEFAULT_EVENT_RULES if event_rules is None else event_rules)
        self.clock = clock
        self.rng = rng or random.Random()

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reconcile")
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._futures: Set[Future] = set()
        self._cancel = threading.Event()
        self._fatal: Optional[StateError] = None

        # Every resource is due as soon as the scheduler starts
        start = self.clock()
        self._next_due: Dict[str, datetime] = {key: start for key in self.resources}

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def next_due(self, key: str) -> Optional[datetime]:
        return self._next_due.get(key)

    def trigger(self, key: str, force: bool = False, reason: str = "manual") -> Optional[Future]:
        """Submit an attempt for ``key``.

        Returns:
            Future resolving to the AttemptResult, or None when an attempt for
            the same resource is already in flight or the scheduler is stopping

        Raises:
            ResourceNotFoundError: If ``key`` is not scheduled
        """
        resource = self.resources.get(key)
        if resource is None:
            raise ResourceNotFoundError(f"Resource not scheduled: {key}")

        with self._lock:
            if self._cancel.is_set():
                return None
            if key in self._in_flight:
                logger.info(f"Coalescing {reason} trigger for {key}, attempt in flight",
                            extra={"resource_id": key})
                return None
            self._in_flight.add(key)
            logger.debug(f"Triggering {key} ({reason})", extra={"resource_id": key})
            future = self._executor.submit(self._run, resource, force)
            self._futures.add(future)

        future.add_done_callback(self._discard_future)
        return future

    def tick(self, now: Optional[datetime] = None) -> List[Future]:
        """Trigger every resource whose period has elapsed."""
        now = now or self.clock()
        futures = []
        for key, due in list(self._next_due.items()):
            if due > now:
                continue
            future = self.trigger(key, reason="periodic")
            if future is None:
                continue
            seconds = jittered(self.interval.total_seconds(), self.jitter, self.rng)
            self._next_due[key] = now + timedelta(seconds=seconds)
            futures.append(future)
        return futures

    def drain(self) -> None:
        """Wait until no attempts, including event-triggered ones, are pending."""
        while True:
            with self._lock:
                pending = [f for f in self._futures if not f.done()]
            if not pending:
                break
            wait_for(pending)
        self._raise_fatal()

    def run_forever(self, poll_interval: float = 1.0, once: bool = False) -> None:
        """Run the scheduling loop until ``shutdown`` or a fatal state error.

        Args:
            poll_interval: Seconds between due-time checks
            once: Trigger every due resource a single time, wait, and return

        Raises:
            StateError: If a worker hit an unusable state store
        """
        logger.info(f"Scheduling {len(self.resources)} resources every {self.interval}")
        if once:
            self.tick()
            self.drain()
            return

        while not self._cancel.is_set():
            self.tick()
            self._cancel.wait(poll_interval)
        self._raise_fatal()

    def shutdown(self, wait: bool = True) -> None:
        """Cancel in-flight attempts at their next phase boundary and stop."""
        with self._lock:
            self._cancel.set()
        self._executor.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def _run(self, resource: Resource, force: bool) -> AttemptResult:
        key = resource.key
        try:
            result = self.reconciler.reconcile(resource, force=force, cancel_event=self._cancel)
        except StateError as e:
            logger.critical(f"State store failure, stopping scheduler: {e}", extra={"resource_id": key})
            with self._lock:
                self._fatal = self._fatal or e
                self._cancel.set()
            raise
        finally:
            with self._lock:
                self._in_flight.discard(key)

        if result.outcome == ReconcileOutcome.SUCCESS:
            self._fire_events(resource)
        return result

    def _fire_events(self, source: Resource) -> None:
        for rule in self.event_rules:
            if rule.source_kind != source.kind:
                continue
            for key, target in self.resources.items():
                if target.kind == rule.target_kind:
                    self.trigger(key, reason=f"event from {source.key}")

    def _discard_future(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def _raise_fatal(self) -> None:
        if self._fatal is not None:
            raise self._fatal
