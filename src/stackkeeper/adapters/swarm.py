"""Docker Swarm orchestrator controller built on the Docker SDK."""

from typing import Any, Optional

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.types import ServiceMode

from stackkeeper.adapters.base import OrchestratorController
from stackkeeper.resources.models import RolloutStatus
from stackkeeper.utils.errors import (
    DeploymentError,
    ErrorContext,
    OperationTimeoutError,
    ReconcileError,
)
from stackkeeper.utils.logging import get_logger

logger = get_logger(__name__)

# Swarm UpdateStatus.State -> rollout status
UPDATE_STATES = {
    "updating": RolloutStatus.IN_PROGRESS,
    "rollback_started": RolloutStatus.FAILED,
    "rollback_paused": RolloutStatus.FAILED,
    "rollback_completed": RolloutStatus.FAILED,
    "paused": RolloutStatus.FAILED,
    "completed": RolloutStatus.HEALTHY,
}


def strip_digest(image: str) -> str:
    """Drop the ``@sha256:...`` pin Swarm adds to resolved images."""
    return image.split("@", 1)[0]


def _task_image(task: dict) -> str:
    return strip_digest(task["Spec"]["ContainerSpec"]["Image"])


class DockerSwarmController(OrchestratorController):
    """Reads and updates Swarm services through the Docker Engine API."""

    def __init__(self, base_url: Optional[str] = None):
        """Initialize Swarm controller.

        Args:
            base_url: Docker Engine URL, falls back to DOCKER_HOST / the local socket
        """
        self.base_url = base_url

    def _client(self, timeout: float) -> docker.DockerClient:
        timeout = max(int(timeout), 1)
        try:
            if self.base_url:
                return docker.DockerClient(base_url=self.base_url, timeout=timeout)
            return docker.from_env(timeout=timeout)
        except DockerException as e:
            raise DeploymentError(
                f"Cannot connect to Docker: {e}",
                cause=e,
                suggestions=["Check STACKKEEPER_DOCKER_URL or DOCKER_HOST"]
            ) from e

    def _call(self, operation: str, service_id: str, timeout: float, func) -> Any:
        """Run ``func(client)`` translating SDK failures into the error taxonomy."""
        context = ErrorContext(resource_id=service_id, operation=operation)
        client = self._client(timeout)
        try:
            return func(client)
        except ReconcileError:
            raise
        except requests.exceptions.Timeout as e:
            raise OperationTimeoutError(
                f"{operation} on {service_id} timed out after {timeout}s",
                context=context,
                cause=e
            ) from e
        except NotFound as e:
            raise DeploymentError(
                f"Service not found: {service_id}",
                context=context,
                cause=e,
                suggestions=["Deploy the stack before reconciling it"]
            ) from e
        except (APIError, DockerException, requests.exceptions.ConnectionError) as e:
            raise DeploymentError(
                f"{operation} on {service_id} failed: {e}",
                context=context,
                cause=e
            ) from e
        finally:
            client.close()

    def current_image(self, service_id: str, *, timeout: float = 30.0) -> Optional[str]:
        def read(client):
            try:
                service = client.services.get(service_id)
            except NotFound:
                return None
            image = service.attrs["Spec"]["TaskTemplate"]["ContainerSpec"]["Image"]
            return strip_digest(image)

        return self._call("current_image", service_id, timeout, read)

    def replica_count(self, service_id: str, *, timeout: float = 30.0) -> Optional[int]:
        def read(client):
            service = client.services.get(service_id)
            mode = service.attrs["Spec"].get("Mode", {})
            return mode.get("Replicated", {}).get("Replicas")

        return self._call("replica_count", service_id, timeout, read)

    def rollout_status(self, service_id: str, *, timeout: float = 30.0) -> RolloutStatus:
        def read(client):
            service = client.services.get(service_id)
            update_status = service.attrs.get("UpdateStatus")
            if update_status:
                return UPDATE_STATES.get(update_status.get("State", ""), RolloutStatus.PENDING)

            # No update recorded yet: healthy once every task that should run is
            # running the image in the service spec
            spec_image = strip_digest(service.attrs["Spec"]["TaskTemplate"]["ContainerSpec"]["Image"])
            tasks = service.tasks(filters={"desired-state": "running"})
            if not tasks:
                return RolloutStatus.PENDING
            if any(_task_image(task) != spec_image for task in tasks):
                return RolloutStatus.IN_PROGRESS
            if all(task["Status"]["State"] == "running" for task in tasks):
                return RolloutStatus.HEALTHY
            return RolloutStatus.PENDING

        return self._call("rollout_status", service_id, timeout, read)

    def update_service(
        self,
        service_id: str,
        image_reference: str,
        *,
        replicas: Optional[int] = None,
        timeout: float = 30.0
    ) -> None:
        def update(client):
            service = client.services.get(service_id)
            kwargs = {"image": image_reference}
            if replicas is not None:
                kwargs["mode"] = ServiceMode("replicated", replicas=replicas)
            service.update(**kwargs)
            logger.info(f"Rolling update of {service_id} to {image_reference} accepted")

        self._call("update_service", service_id, timeout, update)

    def restart_service(self, service_id: str, *, timeout: float = 30.0) -> None:
        def restart(client):
            service = client.services.get(service_id)
            service.force_update()
            logger.info(f"Forced rolling restart of {service_id}")

        self._call("restart_service", service_id, timeout, restart)
