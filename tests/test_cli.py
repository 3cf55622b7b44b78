"""Test the command-line interface with in-memory adapters."""

import textwrap

import pytest
from click.testing import CliRunner

from conftest import FakeIssuer, FakeOrchestrator, FakeProxy, make_certificate
from stackkeeper.cli.main import Runtime, cli
from stackkeeper.reconciler.reconciler import AdapterTimeouts, Reconciler
from stackkeeper.state.store import FileStateStore
from stackkeeper.utils.backoff import Backoff, CircuitBreaker
from stackkeeper.utils.errors import IssuanceError, StateError

CONFIG = """
certificates:
  - domain: example.org
    email: ops@example.org
    reload_service: app_nginx
proxy:
  template_path: nginx.conf.j2
  targets:
    backend: "backend:5000"
deployments:
  - service_id: app_backend
    image_reference: "org/backend:1.4.2"
"""


class Harness:
    """Fake adapters shared across CLI invocations of one test."""

    def __init__(self):
        self.issuer = FakeIssuer()
        self.proxy = FakeProxy()
        self.orchestrator = FakeOrchestrator()
        self.orchestrator.add_service("app_backend", "org/backend:1.4.1")
        self.orchestrator.add_service("app_nginx", "nginx:alpine")
        self.store_cls = FileStateStore

    def factory(self, config, state_dir=None):
        store = self.store_cls(state_dir or config.state_dir)
        reconciler = Reconciler(
            store,
            self.issuer,
            self.proxy,
            self.orchestrator,
            timeouts=AdapterTimeouts(rollout=0.05),
            breaker=CircuitBreaker(config.reconciler.max_attempts_per_window),
            rollout_backoff=Backoff(base_delay=0.001, max_delay=0.001, jitter=False),
            sleep=lambda seconds: None,
        )
        return Runtime(config, store, reconciler)


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "stackkeeper.yaml"
    path.write_text(CONFIG)
    return str(path)


@pytest.fixture
def invoke(harness, config_path):
    runner = CliRunner()

    def run(*args, config=None):
        return runner.invoke(
            cli,
            ["--config", config or config_path, "--log-level", "error", *args],
            obj={"runtime_factory": harness.factory},
        )

    return run


class TestReconcileCommand:
    """Test exit codes of ``reconcile``."""

    def test_success(self, invoke, harness):
        harness.issuer.certificates["example.org"] = make_certificate(days_left=10)

        result = invoke("reconcile", "example.org")

        assert result.exit_code == 0, result.output
        assert "renew" in result.output
        assert "Revision: 1" in result.output

    def test_noop(self, invoke, harness):
        harness.issuer.certificates["example.org"] = make_certificate(days_left=60)

        result = invoke("reconcile", "certificate/example.org")

        assert result.exit_code == 0
        assert "skipped" in result.output

    def test_failure_exits_1(self, invoke, harness):
        harness.issuer.fail = IssuanceError("ACME challenge failed")

        result = invoke("reconcile", "example.org")

        assert result.exit_code == 1
        assert "ACME challenge failed" in result.output

    def test_not_found_exits_2(self, invoke):
        result = invoke("reconcile", "missing.example.org")
        assert result.exit_code == 2
        assert "not found" in result.output

    def test_degraded_until_forced(self, invoke, harness):
        harness.issuer.fail = IssuanceError("ACME challenge failed")
        for _ in range(3):
            assert invoke("reconcile", "example.org").exit_code == 1

        suppressed = invoke("reconcile", "example.org")
        assert suppressed.exit_code == 1
        assert "DEGRADED" in suppressed.output
        assert harness.issuer.calls.count("issue") == 3

        harness.issuer.fail = None
        forced = invoke("reconcile", "example.org", "--force")
        assert forced.exit_code == 0
        assert harness.issuer.calls.count("issue") == 4

    def test_missing_config_exits_3(self, invoke, tmp_path):
        result = invoke("reconcile", "example.org", config=str(tmp_path / "nope.yaml"))
        assert result.exit_code == 3

    def test_broken_config_exits_3(self, invoke, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("certificates: [unclosed\n")
        result = invoke("reconcile", "example.org", config=str(path))
        assert result.exit_code == 3

    def test_state_error_exits_3(self, invoke, harness):
        class BrokenStore(FileStateStore):
            def records(self, resource_key, limit=None):
                raise StateError("records unreadable")

        harness.store_cls = BrokenStore
        result = invoke("reconcile", "example.org")

        assert result.exit_code == 3
        assert "State store unavailable" in result.output


class TestInspectionCommands:
    """Test ``status``, ``list``, ``history`` and ``plan``."""

    def test_status_never_reconciled(self, invoke):
        result = invoke("status", "app_backend")
        assert result.exit_code == 0
        assert "NEVER_RECONCILED" in result.output

    def test_status_after_success(self, invoke):
        invoke("reconcile", "app_backend")

        result = invoke("status", "app_backend")

        assert result.exit_code == 0
        assert "OK" in result.output
        assert "success" in result.output

    def test_status_not_found(self, invoke):
        assert invoke("status", "nothing").exit_code == 2

    def test_list(self, invoke):
        invoke("reconcile", "app_backend")

        result = invoke("list")

        assert result.exit_code == 0
        assert "certificate/example.org" in result.output
        assert "proxy_config/nginx" in result.output
        assert "service_deployment/app_backend" in result.output

    def test_history(self, invoke, harness):
        harness.issuer.fail = IssuanceError("ACME challenge failed")
        invoke("reconcile", "example.org")
        invoke("reconcile", "example.org")

        result = invoke("history", "example.org", "--limit", "5")

        assert result.exit_code == 0
        assert "History of certificate/example.org" in result.output
        assert "ACME challenge" in result.output

    def test_history_empty(self, invoke):
        result = invoke("history", "example.org")
        assert result.exit_code == 0
        assert "No reconciliation records" in result.output

    def test_plan_changes_nothing(self, invoke, harness):
        result = invoke("plan", "app_backend")

        assert result.exit_code == 0
        assert "update" in result.output
        assert harness.orchestrator.calls == []


class TestValidateCommand:
    """Test configuration validation reports."""

    def test_valid(self, invoke):
        result = invoke("validate")
        assert result.exit_code == 0
        assert "valid" in result.output

    def test_invalid_entry(self, invoke, tmp_path):
        path = tmp_path / "invalid.yaml"
        path.write_text(textwrap.dedent("""
            certificates:
              - domain: example.org
                email: nobody
        """))

        result = invoke("validate", config=str(path))

        assert result.exit_code == 1
        assert "email" in result.output


def test_run_once_reconciles_everything(invoke, harness):
    harness.issuer.certificates["example.org"] = make_certificate(days_left=60)

    result = invoke("run", "--once")

    assert result.exit_code == 0, result.output
    assert ("update_service", "app_backend", "org/backend:1.4.2") in harness.orchestrator.calls
    assert harness.proxy.active is not None
