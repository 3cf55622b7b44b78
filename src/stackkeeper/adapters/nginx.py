"""nginx proxy controller: jinja2 templates, ``nginx -t`` and reload commands."""

import os
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from stackkeeper.adapters.base import ProxyController, config_hash
from stackkeeper.adapters.process import remaining_time, run_command
from stackkeeper.utils.backoff import Backoff
from stackkeeper.utils.errors import (
    ActivationError,
    OperationTimeoutError,
    ReconcileError,
    ValidationError,
)
from stackkeeper.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_VALIDATE_COMMAND = ["nginx", "-t", "-q", "-c", "{config}"]
DEFAULT_RELOAD_COMMAND = ["nginx", "-s", "reload"]


class NginxController(ProxyController):
    """Manages the nginx configuration file and the live nginx process."""

    def __init__(
        self,
        config_path: str,
        validate_command: Optional[List[str]] = None,
        reload_command: Optional[List[str]] = None,
        health_url: Optional[str] = None,
        backoff: Optional[Backoff] = None
    ):
        """Initialize nginx controller.

        Args:
            config_path: Live configuration file mounted into the proxy
            validate_command: Syntax check command, ``{config}`` is replaced by the
                candidate file path
            reload_command: Command that makes the proxy pick up the new file,
                e.g. ``docker service update --force app_nginx`` under Swarm
            health_url: URL polled until the proxy answers after a reload
            backoff: Polling backoff for the readiness probe
        """
        self.config_path = Path(config_path)
        self.validate_command = validate_command or list(DEFAULT_VALIDATE_COMMAND)
        self.reload_command = reload_command or list(DEFAULT_RELOAD_COMMAND)
        self.health_url = health_url
        self.backoff = backoff or Backoff(base_delay=0.5, max_delay=5.0)

    def render(self, config_template: str, variables: Dict[str, Any]) -> bytes:
        """Render a jinja2 template file."""
        template_path = Path(config_template)
        env = Environment(
            loader=FileSystemLoader(str(template_path.parent)),
            keep_trailing_newline=True,
            undefined=StrictUndefined,
        )
        try:
            return env.get_template(template_path.name).render(**variables).encode()
        except TemplateError as e:
            raise ValidationError(
                f"Failed to render {config_template}: {e}",
                cause=e,
                suggestions=["Check the template syntax and the proxy vars in the configuration"]
            ) from e

    def validate(self, config_bytes: bytes, *, timeout: float = 30.0) -> None:
        """Run the validate command against a temporary copy of the config."""
        fd, candidate = tempfile.mkstemp(prefix="nginx-", suffix=".conf")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(config_bytes)
            cmd = [part.replace("{config}", candidate) for part in self.validate_command]
            run_command(cmd, timeout=timeout, operation="validate", error_cls=ValidationError)
        finally:
            os.unlink(candidate)

    def activate(self, config_bytes: bytes, *, timeout: float = 60.0) -> None:
        """Install the config, reload the proxy and wait for it to become ready.

        The active hash marker is only updated once the proxy is ready. On
        failure the previous configuration is restored and the proxy is
        reloaded again before the error is raised.
        """
        deadline = time.monotonic() + timeout
        previous = self.config_path.read_bytes() if self.config_path.exists() else None

        self._write(self.config_path, config_bytes)
        try:
            self._reload(deadline)
            self._wait_ready(deadline)
        except ReconcileError as e:
            logger.warning(f"Activation failed, restoring previous configuration: {e}")
            self._restore(previous, deadline)
            if isinstance(e, (ActivationError, OperationTimeoutError)):
                raise
            raise ActivationError(str(e), context=e.context, cause=e) from e

        digest = config_hash(config_bytes)
        self._write(self.marker_path, digest.encode())
        logger.info(f"Activated proxy configuration {digest[:12]}")

    def active_config_hash(self, *, timeout: float = 30.0) -> Optional[str]:
        """Hash of the configuration the proxy last loaded successfully."""
        if not self.marker_path.exists():
            return None
        return self.marker_path.read_text().strip() or None

    @property
    def marker_path(self) -> Path:
        return self.config_path.with_name(self.config_path.name + ".active-sha256")

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".tmp")
        temp_path.write_bytes(data)
        # Atomic rename
        temp_path.replace(path)

    def _reload(self, deadline: float) -> None:
        run_command(
            self.reload_command,
            timeout=remaining_time(deadline, "activate"),
            operation="activate",
            error_cls=ActivationError,
        )

    def _wait_ready(self, deadline: float) -> None:
        if not self.health_url:
            return

        def probe() -> bool:
            try:
                response = requests.get(self.health_url, timeout=min(5.0, remaining_time(deadline, "activate")))
            except requests.exceptions.RequestException as e:
                logger.debug(f"Readiness probe failed: {e}")
                return False
            return response.status_code < 500

        _, ready = self.backoff.poll(
            probe,
            lambda ok: ok,
            timeout=remaining_time(deadline, "activate"),
        )
        if not ready:
            raise ActivationError(
                f"Proxy did not become ready at {self.health_url}",
                suggestions=["Check the proxy logs for startup errors"]
            )

    def _restore(self, previous: Optional[bytes], deadline: float) -> None:
        if previous is None:
            self.config_path.unlink(missing_ok=True)
            return
        self._write(self.config_path, previous)
        try:
            self._reload(deadline)
        except ReconcileError as e:
            logger.error(f"Reload after restoring previous configuration failed: {e}")
