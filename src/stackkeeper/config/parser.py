"""YAML configuration parser for the desired-state file."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from stackkeeper.resources.models import (
    CertificateSpec,
    DeploymentSpec,
    ProxySpec,
    Resource,
)
from stackkeeper.utils.errors import ResourceNotFoundError, ValidationError
from stackkeeper.utils.logging import get_logger

from .models import ReconcilerConfig, ScheduleConfig

logger = get_logger(__name__)

TOP_LEVEL_KEYS = {"state_dir", "certificates", "proxy", "deployments", "schedule", "reconciler"}

DEFAULT_STATE_DIR = ".stackkeeper/state"


class ConfigValidationError(ValidationError):
    """Exception raised when the configuration file cannot be used at all."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        super().__init__(message, suggestions=["Run 'stackkeeper validate' for a full report"])
        self.errors = errors or []

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  • {location}: {msg}")

        return "\n".join(error_lines)


def _pydantic_errors(prefix: List[Any], error: PydanticValidationError) -> List[Dict]:
    return [
        {"loc": prefix + list(item["loc"]), "msg": item["msg"]}
        for item in error.errors()
    ]


class Config:
    """Desired state loaded from a ``stackkeeper.yaml`` file.

    A resource entry that fails validation is reported in ``errors`` and left
    out of ``resources``; the remaining resources stay usable.
    """

    def __init__(self, config_path: str):
        """Initialize configuration manager.

        Args:
            config_path: Path to stackkeeper.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.errors: List[Dict] = []
        self.certificates: List[CertificateSpec] = []
        self.proxy: Optional[ProxySpec] = None
        self.deployments: List[DeploymentSpec] = []
        self.schedule = ScheduleConfig()
        self.reconciler = ReconcilerConfig()
        self.state_dir = str(self.config_path.parent / DEFAULT_STATE_DIR)

    @property
    def base_dir(self) -> Path:
        return self.config_path.parent

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If the file is not valid YAML, not a mapping,
                or its schedule/reconciler sections are invalid
            FileNotFoundError: If configuration file doesn't exist
        """
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigValidationError(
                f"Configuration must be a mapping, got {type(data).__name__}"
            )
        self.data = data
        self.errors = []

        self._parse_settings()
        self._check_top_level()
        self._parse_certificates()
        self._parse_deployments()
        self._parse_proxy()
        self._check_duplicates()

        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error["loc"])
            logger.warning(f"Ignoring invalid configuration at {location}: {error['msg']}")

        return self

    def validate(self) -> List[Dict]:
        """Load the file and return every problem found.

        Returns:
            List of validation errors (empty if valid)
        """
        try:
            self.load()
        except ConfigValidationError as e:
            return e.errors or [{"loc": [], "msg": e.message}]
        return list(self.errors)

    @property
    def resources(self) -> List[Resource]:
        """Resources for every valid entry."""
        specs: List[BaseModel] = [*self.certificates]
        if self.proxy is not None:
            specs.append(self.proxy)
        specs.extend(self.deployments)
        return [Resource.from_spec(spec) for spec in specs]

    def get_resource(self, ref: str) -> Resource:
        """Look up a configured resource by key or by unambiguous bare id.

        Raises:
            ResourceNotFoundError: If no resource, or more than one, matches
        """
        resources = self.resources
        for resource in resources:
            if resource.key == ref:
                return resource

        matches = [resource for resource in resources if resource.id == ref]
        if len(matches) == 1:
            return matches[0]
        if matches:
            keys = ", ".join(resource.key for resource in matches)
            raise ResourceNotFoundError(
                f"Resource id '{ref}' is ambiguous: {keys}",
                suggestions=["Use the full <kind>/<id> key"]
            )
        raise ResourceNotFoundError(
            f"Resource not found: {ref}",
            suggestions=["Run 'stackkeeper list' to see configured resources"]
        )

    def _parse_settings(self):
        """Parse non-resource sections. Errors here are fatal."""
        errors = []
        sections = (("schedule", ScheduleConfig), ("reconciler", ReconcilerConfig))
        for name, model in sections:
            raw = self.data.get(name) or {}
            try:
                setattr(self, name, model(**raw))
            except PydanticValidationError as e:
                errors.extend(_pydantic_errors([name], e))
            except TypeError:
                errors.append({"loc": [name], "msg": "Section must be a mapping"})

        state_dir = self.data.get("state_dir", DEFAULT_STATE_DIR)
        if not isinstance(state_dir, str) or not state_dir:
            errors.append({"loc": ["state_dir"], "msg": "state_dir must be a non-empty string"})
        else:
            self.state_dir = str(self._resolve(state_dir))

        if errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(errors)} error(s)",
                errors,
            )

    def _check_top_level(self):
        for key in self.data:
            if key not in TOP_LEVEL_KEYS:
                self.errors.append({"loc": [key], "msg": f"Unknown top-level key '{key}'"})

    def _parse_list(self, section: str, model) -> List:
        raw = self.data.get(section) or []
        if not isinstance(raw, list):
            self.errors.append({"loc": [section], "msg": f"'{section}' must be a list"})
            return []

        parsed = []
        for idx, entry in enumerate(raw):
            if not isinstance(entry, dict):
                self.errors.append({"loc": [section, idx], "msg": "Entry must be a mapping"})
                continue
            try:
                parsed.append(model(**entry))
            except PydanticValidationError as e:
                self.errors.extend(_pydantic_errors([section, idx], e))
        return parsed

    def _parse_certificates(self):
        """Parse certificate entries."""
        self.certificates = self._parse_list("certificates", CertificateSpec)

    def _parse_deployments(self):
        """Parse deployment entries."""
        self.deployments = self._parse_list("deployments", DeploymentSpec)

    def _parse_proxy(self):
        """Parse proxy configuration.

        Template paths are relative to the configuration file and server names
        default to every configured certificate domain.
        """
        self.proxy = None
        raw = self.data.get("proxy")
        if raw is None:
            return
        if not isinstance(raw, dict):
            self.errors.append({"loc": ["proxy"], "msg": "'proxy' must be a mapping"})
            return

        data = dict(raw)
        if isinstance(data.get("template_path"), str) and data["template_path"]:
            data["template_path"] = str(self._resolve(data["template_path"]))
        if not data.get("server_names"):
            data["server_names"] = [cert.domain for cert in self.certificates]

        try:
            self.proxy = ProxySpec(**data)
        except PydanticValidationError as e:
            self.errors.extend(_pydantic_errors(["proxy"], e))

    def _check_duplicates(self):
        """Reject every entry after the first with the same resource key."""
        seen = set()
        for section in ("certificates", "deployments"):
            unique = []
            for spec in getattr(self, section):
                key = Resource.from_spec(spec).key
                if key in seen:
                    self.errors.append({"loc": [section], "msg": f"Duplicate resource '{key}'"})
                    continue
                seen.add(key)
                unique.append(spec)
            setattr(self, section, unique)

    def _resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if candidate.is_absolute():
            return candidate
        return self.base_dir / candidate

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        return {
            "state_dir": self.state_dir,
            "certificates": [cert.model_dump() for cert in self.certificates],
            "proxy": self.proxy.model_dump() if self.proxy else None,
            "deployments": [deployment.model_dump() for deployment in self.deployments],
            "schedule": self.schedule.model_dump(),
            "reconciler": self.reconciler.model_dump(by_alias=True),
        }
