"""Pytest configuration and fixtures."""

import logging
import threading
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import pytest

from stackkeeper.adapters.base import (
    CertificateIssuer,
    OrchestratorController,
    ProxyController,
    config_hash,
)
from stackkeeper.reconciler.reconciler import AdapterTimeouts, Reconciler
from stackkeeper.resources.models import (
    CertificateSpec,
    CertificateState,
    DeploymentSpec,
    ProxySpec,
    Resource,
    RolloutStatus,
    utcnow,
)
from stackkeeper.state.store import FileStateStore
from stackkeeper.utils.backoff import Backoff, CircuitBreaker
from stackkeeper.utils.errors import (
    ActivationError,
    DeploymentError,
    IssuanceError,
    ValidationError,
)


def make_certificate(domain: str = "example.org", days_left: float = 60, fingerprint: str = "aa01") -> CertificateState:
    now = utcnow()
    return CertificateState(
        domain=domain,
        issuer="CN=Fake CA",
        not_before=now - timedelta(days=90 - days_left),
        not_after=now + timedelta(days=days_left),
        fingerprint=fingerprint,
    )


class FakeIssuer(CertificateIssuer):
    """In-memory certificate issuer."""

    def __init__(self):
        self.certificates: Dict[str, CertificateState] = {}
        self.calls: List[str] = []
        self.fail: Optional[Exception] = None
        self.on_issue: Optional[Callable[[], None]] = None
        self.issued = 0

    def issue(self, domain, email, *, renew_before=timedelta(days=30), timeout=300.0):
        self.calls.append("issue")
        if self.on_issue:
            self.on_issue()
        if self.fail:
            raise self.fail
        self.issued += 1
        cert = make_certificate(domain, days_left=90, fingerprint=f"renewed{self.issued:02d}")
        self.certificates[domain] = cert
        return cert

    def inspect(self, domain, *, timeout=30.0):
        self.calls.append("inspect")
        return self.certificates.get(domain)


class FakeProxy(ProxyController):
    """Proxy whose rendered output is derived from the template variables."""

    def __init__(self):
        self.active: Optional[bytes] = None
        self.calls: List[str] = []
        self.fail_validate = False
        self.fail_activate = False

    def render(self, config_template, variables):
        self.calls.append("render")
        rendered = f"# {config_template}\n" + "".join(
            f"{key}={variables[key]}\n" for key in sorted(variables)
        )
        return rendered.encode()

    def validate(self, config_bytes, *, timeout=30.0):
        self.calls.append("validate")
        if self.fail_validate:
            raise ValidationError("nginx: [emerg] unexpected end of file")

    def activate(self, config_bytes, *, timeout=60.0):
        self.calls.append("activate")
        if self.fail_activate:
            raise ActivationError("Proxy did not become ready")
        self.active = config_bytes

    def active_config_hash(self, *, timeout=30.0):
        self.calls.append("active_config_hash")
        return config_hash(self.active) if self.active is not None else None


class FakeOrchestrator(OrchestratorController):
    """In-memory Swarm. ``gate`` can hold ``update_service`` until released."""

    def __init__(self):
        self.services: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.fail_update: Optional[Exception] = None
        self.rollout_result = RolloutStatus.HEALTHY
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.on_update: Optional[Callable[[], None]] = None

    def add_service(self, service_id, image, replicas=1, status=RolloutStatus.HEALTHY):
        self.services[service_id] = {"image": image, "replicas": replicas, "status": status}

    def current_image(self, service_id, *, timeout=30.0):
        service = self.services.get(service_id)
        return service["image"] if service else None

    def replica_count(self, service_id, *, timeout=30.0):
        return self.services[service_id]["replicas"]

    def rollout_status(self, service_id, *, timeout=30.0):
        return self.services[service_id]["status"]

    def update_service(self, service_id, image_reference, *, replicas=None, timeout=30.0):
        self.calls.append(("update_service", service_id, image_reference))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.on_update:
            self.on_update()
        if self.fail_update:
            raise self.fail_update
        service = self.services[service_id]
        service["image"] = image_reference
        if replicas is not None:
            service["replicas"] = replicas
        service["status"] = self.rollout_result

    def restart_service(self, service_id, *, timeout=30.0):
        self.calls.append(("restart_service", service_id))
        if service_id not in self.services:
            raise DeploymentError(f"Service not found: {service_id}")


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers the CLI installs so later tests don't log to closed streams."""
    yield
    logging.getLogger().handlers.clear()


@pytest.fixture
def store(tmp_path):
    """File state store in a temporary directory."""
    return FileStateStore(str(tmp_path / "state"))


@pytest.fixture
def issuer():
    return FakeIssuer()


@pytest.fixture
def proxy():
    return FakeProxy()


@pytest.fixture
def orchestrator():
    orchestrator = FakeOrchestrator()
    orchestrator.add_service("app_backend", "org/backend:1.4.1", replicas=2)
    orchestrator.add_service("app_nginx", "nginx:alpine")
    return orchestrator


@pytest.fixture
def reconciler(store, issuer, proxy, orchestrator):
    """Reconciler over the fakes that never sleeps while polling."""
    return Reconciler(
        store,
        issuer,
        proxy,
        orchestrator,
        timeouts=AdapterTimeouts(rollout=0.05),
        breaker=CircuitBreaker(3),
        rollout_backoff=Backoff(base_delay=0.001, max_delay=0.001, jitter=False),
        sleep=lambda seconds: None,
    )


@pytest.fixture
def certificate():
    """Certificate resource with a proxy restart hook."""
    return Resource.from_spec(CertificateSpec(
        domain="example.org",
        email="ops@example.org",
        renewal_window_days=30,
        reload_service="app_nginx",
    ))


@pytest.fixture
def proxy_config():
    return Resource.from_spec(ProxySpec(
        name="nginx",
        template_path="/etc/stackkeeper/nginx.conf.j2",
        targets={"frontend": "frontend:3000", "backend": "backend:5000"},
        server_names=["example.org"],
    ))


@pytest.fixture
def deployment():
    return Resource.from_spec(DeploymentSpec(
        service_id="app_backend",
        image_reference="org/backend:1.4.2",
        replica_count=2,
    ))
