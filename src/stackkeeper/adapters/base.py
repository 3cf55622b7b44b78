"""Adapter interfaces over the external systems the reconciler drives."""

import hashlib
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Dict, Optional

from stackkeeper.resources.models import CertificateState, RolloutStatus


def config_hash(config_bytes: bytes) -> str:
    """Content hash used to compare rendered and active proxy configs."""
    return hashlib.sha256(config_bytes).hexdigest()


class CertificateIssuer(ABC):
    """Issues and inspects TLS certificates."""

    @abstractmethod
    def issue(
        self,
        domain: str,
        email: str,
        *,
        renew_before: timedelta = timedelta(days=30),
        timeout: float = 300.0
    ) -> CertificateState:
        """Obtain or renew the certificate for ``domain``.

        Re-issuing while the current certificate is valid for longer than
        ``renew_before`` is a no-op that returns the current certificate.

        Args:
            domain: Domain name
            email: Registration contact
            renew_before: Renew certificates expiring sooner than this
            timeout: Upper bound for the call in seconds

        Returns:
            The certificate now on disk

        Raises:
            IssuanceError: If the issuer fails
            OperationTimeoutError: If the call exceeds ``timeout``
        """
        pass

    @abstractmethod
    def inspect(self, domain: str, *, timeout: float = 30.0) -> Optional[CertificateState]:
        """Read the current certificate, None if there is none."""
        pass


class ProxyController(ABC):
    """Renders, validates and activates reverse-proxy configuration."""

    @abstractmethod
    def render(self, config_template: str, variables: Dict[str, Any]) -> bytes:
        """Render ``config_template`` with ``variables``.

        Raises:
            ValidationError: If the template cannot be rendered
        """
        pass

    @abstractmethod
    def validate(self, config_bytes: bytes, *, timeout: float = 30.0) -> None:
        """Check a configuration without applying it.

        Raises:
            ValidationError: If the proxy rejects the configuration
        """
        pass

    @abstractmethod
    def activate(self, config_bytes: bytes, *, timeout: float = 60.0) -> None:
        """Install the configuration, signal the proxy and wait until it is ready.

        Raises:
            ActivationError: If the proxy cannot be signaled or never becomes ready
        """
        pass

    @abstractmethod
    def active_config_hash(self, *, timeout: float = 30.0) -> Optional[str]:
        """Hash of the configuration the proxy last loaded and became ready with, None if none."""
        pass


class OrchestratorController(ABC):
    """Reads and updates services in the container orchestrator."""

    @abstractmethod
    def current_image(self, service_id: str, *, timeout: float = 30.0) -> Optional[str]:
        """Image the service runs, None if the service does not exist."""
        pass

    def replica_count(self, service_id: str, *, timeout: float = 30.0) -> Optional[int]:
        """Declared replica count, None for global or unknown services."""
        # Default implementation - subclasses should override
        return None

    @abstractmethod
    def update_service(
        self,
        service_id: str,
        image_reference: str,
        *,
        replicas: Optional[int] = None,
        timeout: float = 30.0
    ) -> None:
        """Start a rolling update. Returns once the orchestrator accepts it.

        Raises:
            DeploymentError: If the orchestrator rejects the update
        """
        pass

    @abstractmethod
    def rollout_status(self, service_id: str, *, timeout: float = 30.0) -> RolloutStatus:
        """Progress of the most recent rolling update."""
        pass

    @abstractmethod
    def restart_service(self, service_id: str, *, timeout: float = 30.0) -> None:
        """Force a rolling restart without changing the service spec.

        Raises:
            DeploymentError: If the orchestrator rejects the restart
        """
        pass
