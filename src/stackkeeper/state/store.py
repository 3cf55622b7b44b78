"""State store for committed resources and the reconciliation log."""

import fcntl
import json
import os
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import ContextManager, Iterator, List, Optional

from pydantic import ValidationError as PydanticValidationError

from stackkeeper.resources.models import ReconciliationRecord, Resource, ResourceKind, utcnow
from stackkeeper.utils.errors import ConflictError, ErrorContext, ResourceNotFoundError, StateError
from stackkeeper.utils.logging import get_logger

logger = get_logger(__name__)


def split_key(resource_key: str):
    """Split ``<kind>/<id>`` into its parts.

    Raises:
        ResourceNotFoundError: If the key is malformed or names an unknown kind
    """
    kind, sep, resource_id = resource_key.partition("/")
    try:
        kind = ResourceKind(kind)
    except ValueError:
        sep = ""
    if not sep or not resource_id or "/" in resource_id:
        raise ResourceNotFoundError(
            f"Invalid resource key: {resource_key}",
            suggestions=["Use <kind>/<id>, e.g. certificate/example.org"]
        )
    return kind, resource_id


class StateStore(ABC):
    """Durable storage of Resources with compare-and-swap commits."""

    @abstractmethod
    def load(self, resource_key: str) -> Resource:
        """Load a committed resource.

        Raises:
            ResourceNotFoundError: If nothing was committed under the key
        """

    @abstractmethod
    def save(self, resource: Resource, expected_revision: int) -> Resource:
        """Commit ``resource`` if the stored revision equals ``expected_revision``.

        A key with no stored resource has revision 0. The committed resource
        carries revision ``expected_revision + 1``.

        Raises:
            ConflictError: If another attempt committed first
        """

    @abstractmethod
    def append_record(self, record: ReconciliationRecord) -> None:
        """Append a record to the reconciliation log."""

    @abstractmethod
    def records(self, resource_key: str, limit: Optional[int] = None) -> List[ReconciliationRecord]:
        """Records for a resource, oldest first; ``limit`` keeps the newest."""

    @abstractmethod
    def list_resources(self) -> List[Resource]:
        """All committed resources."""

    @abstractmethod
    def attempt_lock(self, resource_key: str) -> ContextManager[bool]:
        """Hold the per-resource attempt lock shared by every process using the store.

        Never blocks. The context value is False when another attempt,
        in this process or another one, already holds the lock.
        """

    def last_record(self, resource_key: str) -> Optional[ReconciliationRecord]:
        records = self.records(resource_key, limit=1)
        return records[-1] if records else None


class FileStateStore(StateStore):
    """State store on the local filesystem.

    Layout under ``state_dir``::

        resources/<kind>/<id>.json    committed Resource
        records/<kind>/<id>.jsonl     append-only reconciliation log
        locks/<kind>/<id>.lock        per-resource attempt lock
        .lock                         store lock, held only for single reads and writes
    """

    LOCK_POLL_INTERVAL = 0.05

    def __init__(self, state_dir: str, lock_timeout: float = 30.0):
        """Initialize file state store.

        Args:
            state_dir: Directory holding the store
            lock_timeout: Seconds to wait for the store lock before raising StateError
        """
        self.state_dir = Path(state_dir)
        self.lock_timeout = lock_timeout
        self._thread_lock = threading.Lock()

    def resource_path(self, resource_key: str) -> Path:
        kind, resource_id = split_key(resource_key)
        return self.state_dir / "resources" / kind.value / f"{resource_id}.json"

    def records_path(self, resource_key: str) -> Path:
        kind, resource_id = split_key(resource_key)
        return self.state_dir / "records" / kind.value / f"{resource_id}.jsonl"

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the in-process lock and an exclusive flock on ``.lock``."""
        with self._thread_lock:
            try:
                self.state_dir.mkdir(parents=True, exist_ok=True)
                fd = os.open(str(self.state_dir / ".lock"), os.O_CREAT | os.O_RDWR)
            except OSError as e:
                raise StateError(f"State directory unavailable: {self.state_dir}: {e}", cause=e) from e
            try:
                self._flock_with_timeout(fd)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def _flock_with_timeout(self, fd: int) -> None:
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise StateError(
                        f"Timed out after {self.lock_timeout}s waiting for {self.state_dir / '.lock'}",
                        suggestions=["Check for a hung stackkeeper process holding the state lock"]
                    )
                time.sleep(self.LOCK_POLL_INTERVAL)

    @contextmanager
    def attempt_lock(self, resource_key: str) -> Iterator[bool]:
        kind, resource_id = split_key(resource_key)
        path = self.state_dir / "locks" / kind.value / f"{resource_id}.lock"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(path), os.O_CREAT | os.O_RDWR)
        except OSError as e:
            raise StateError(f"Cannot open attempt lock {path}: {e}", cause=e) from e

        try:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                acquired = True
            except BlockingIOError:
                acquired = False
            try:
                yield acquired
            finally:
                if acquired:
                    fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def load(self, resource_key: str) -> Resource:
        path = self.resource_path(resource_key)
        with self._locked():
            resource = self._read(path)
        if resource is None:
            raise ResourceNotFoundError(
                f"No committed state for {resource_key}",
                context=ErrorContext(resource_id=resource_key, operation="load")
            )
        return resource

    def save(self, resource: Resource, expected_revision: int) -> Resource:
        path = self.resource_path(resource.key)
        with self._locked():
            current = self._read(path)
            current_revision = current.last_applied_revision if current else 0
            if current_revision != expected_revision:
                raise ConflictError(
                    f"Revision conflict on {resource.key}: expected {expected_revision}, "
                    f"found {current_revision}",
                    context=ErrorContext(resource_id=resource.key, operation="save")
                )

            committed = resource.model_copy(
                update={"last_applied_revision": expected_revision + 1, "updated_at": utcnow()}
            )
            self._write(path, committed)

        logger.debug(
            f"Committed {resource.key} at revision {committed.last_applied_revision}",
            extra={"resource_id": resource.key, "resource_kind": resource.kind.value}
        )
        return committed

    def append_record(self, record: ReconciliationRecord) -> None:
        path = self.records_path(record.resource_id)
        line = json.dumps(record.model_dump(mode="json")) + "\n"
        with self._locked():
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "a") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                raise StateError(f"Failed to append record to {path}: {e}", cause=e) from e

    def records(self, resource_key: str, limit: Optional[int] = None) -> List[ReconciliationRecord]:
        path = self.records_path(resource_key)
        with self._locked():
            if not path.exists():
                return []
            try:
                with open(path, "r") as f:
                    lines = [line for line in f if line.strip()]
            except OSError as e:
                raise StateError(f"Failed to read records from {path}: {e}", cause=e) from e

        if limit is not None:
            lines = lines[-limit:] if limit > 0 else []

        records = []
        for number, line in enumerate(lines, 1):
            try:
                records.append(ReconciliationRecord.model_validate_json(line))
            except PydanticValidationError as e:
                raise StateError(f"Corrupt record in {path} (entry {number}): {e}", cause=e) from e
        return records

    def list_resources(self) -> List[Resource]:
        root = self.state_dir / "resources"
        resources = []
        with self._locked():
            for kind in ResourceKind:
                kind_dir = root / kind.value
                if not kind_dir.is_dir():
                    continue
                for path in sorted(kind_dir.glob("*.json")):
                    resource = self._read(path)
                    if resource is not None:
                        resources.append(resource)
        return resources

    def _read(self, path: Path) -> Optional[Resource]:
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return Resource.from_dict(json.load(f))
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {path}: {e}", cause=e) from e
        except PydanticValidationError as e:
            raise StateError(f"Invalid state file {path}: {e}", cause=e) from e
        except OSError as e:
            raise StateError(f"Failed to load state file {path}: {e}", cause=e) from e

    def _write(self, path: Path, resource: Resource) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write to temporary file first
            temp_path = path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                json.dump(resource.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            temp_path.replace(path)
        except OSError as e:
            raise StateError(f"Failed to save state file {path}: {e}", cause=e) from e
