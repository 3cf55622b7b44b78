"""Error handling framework for reconciliation operations."""

import re
import subprocess
from typing import Optional, Dict, Any, List, Type
from enum import Enum
from dataclasses import dataclass

import requests

from stackkeeper.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during reconciliation."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    ISSUANCE = "issuance"
    ACTIVATION = "activation"
    DEPLOYMENT = "deployment"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    STATE = "state"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Process cannot continue
    ERROR = "error"  # Resource attempt failed, other resources unaffected
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_kind: Optional[str] = None
    operation: Optional[str] = None
    command: Optional[str] = None
    exit_code: Optional[int] = None
    additional_info: Optional[Dict[str, Any]] = None


class ReconcileError(Exception):
    """Base exception for reconciliation errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize reconciliation error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.context.command:
            lines.append(f"   Command: {self.context.command}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'resource_id': self.context.resource_id,
                'resource_kind': self.context.resource_kind,
                'operation': self.context.operation,
                'command': self.context.command,
                'exit_code': self.context.exit_code,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ValidationError(ReconcileError):
    """Malformed desired spec or proxy configuration rejected by validation."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class IssuanceError(ReconcileError):
    """Certificate issuer reported a failure."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.ISSUANCE,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ActivationError(ReconcileError):
    """Proxy could not be signaled or did not become ready."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.ACTIVATION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class DeploymentError(ReconcileError):
    """Orchestrator rejected or failed a service update."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DEPLOYMENT,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ConflictError(ReconcileError):
    """Compare-and-swap save lost a race against another attempt."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFLICT,
            severity=ErrorSeverity.INFO,
            **kwargs
        )


class OperationTimeoutError(ReconcileError):
    """Adapter call exceeded the bound supplied by the caller."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.TIMEOUT,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class StateError(ReconcileError):
    """State store cannot be read or written."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ResourceNotFoundError(ReconcileError):
    """Resource is neither configured nor present in the state store."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.NOT_FOUND,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ErrorHandler:
    """Normalizes failures from external tools into the error taxonomy."""

    # Known tool output, matched against stderr/stdout of failed commands
    TOOL_ERROR_PATTERNS = [
        {
            'pattern': re.compile(r'too many (certificates|failed authorizations)', re.IGNORECASE),
            'category': ErrorCategory.ISSUANCE,
            'message': 'Certificate authority rate limit reached',
            'suggestions': [
                'Wait for the rate limit window to pass before retrying',
                'Use the staging environment (STACKKEEPER_CERTBOT_STAGING=1) while testing',
            ]
        },
        {
            'pattern': re.compile(r'(Challenge failed|unauthorized|Invalid response from)', re.IGNORECASE),
            'category': ErrorCategory.ISSUANCE,
            'message': 'ACME challenge failed',
            'suggestions': [
                'Check that the domain resolves to this host',
                'Verify port 80 is reachable from the internet',
                'Confirm the proxy serves /.well-known/acme-challenge/',
            ]
        },
        {
            'pattern': re.compile(r'\[emerg\]'),
            'category': ErrorCategory.VALIDATION,
            'message': 'Proxy rejected the configuration',
            'suggestions': [
                'Inspect the rendered configuration for syntax errors',
                'Check that referenced certificate files exist',
            ]
        },
        {
            'pattern': re.compile(r'(service .* not found|No such service)', re.IGNORECASE),
            'category': ErrorCategory.DEPLOYMENT,
            'message': 'Service not found in the orchestrator',
            'suggestions': [
                'Deploy the stack before reconciling it',
                'Check the service id includes the stack prefix',
            ]
        },
        {
            'pattern': re.compile(r'(Cannot connect to the Docker daemon|connection refused)', re.IGNORECASE),
            'category': ErrorCategory.DEPLOYMENT,
            'message': 'Orchestrator endpoint unreachable',
            'suggestions': [
                'Verify the Docker daemon is running',
                'Check STACKKEEPER_DOCKER_URL or DOCKER_HOST',
            ]
        },
    ]

    # Error class for each category when a failure is reclassified
    CATEGORY_ERRORS: Dict[ErrorCategory, Type[ReconcileError]] = {
        ErrorCategory.VALIDATION: ValidationError,
        ErrorCategory.ISSUANCE: IssuanceError,
        ErrorCategory.ACTIVATION: ActivationError,
        ErrorCategory.DEPLOYMENT: DeploymentError,
        ErrorCategory.TIMEOUT: OperationTimeoutError,
    }

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None,
        default: Type[ReconcileError] = ReconcileError
    ) -> ReconcileError:
        """Handle an exception and convert it to a ReconcileError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred
            default: Error class used when the failure cannot be classified

        Returns:
            ReconcileError with categorization and suggestions
        """
        context = context or ErrorContext()

        # Already part of the taxonomy
        if isinstance(error, ReconcileError):
            return error

        logger.debug(f"Normalizing {type(error).__name__} from {context.operation or 'unknown operation'}: {error}")

        if isinstance(error, subprocess.TimeoutExpired):
            context.command = context.command or _format_command(error.cmd)
            return OperationTimeoutError(
                f"Command timed out after {error.timeout}s",
                context=context,
                cause=error,
                suggestions=['The call will be re-observed on the next attempt']
            )

        if isinstance(error, subprocess.CalledProcessError):
            return self._handle_process_error(error, context, default)

        if isinstance(error, requests.exceptions.Timeout):
            return OperationTimeoutError(
                f"Request timed out: {error}",
                context=context,
                cause=error
            )

        if isinstance(error, requests.exceptions.ConnectionError):
            return default(
                f"Connection failed: {error}",
                context=context,
                cause=error,
                suggestions=['Check that the endpoint is reachable from this host']
            )

        if isinstance(error, OSError):
            return default(
                f"{type(error).__name__}: {error}",
                context=context,
                cause=error
            )

        return default(
            message=str(error) or type(error).__name__,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_process_error(
        self,
        error: subprocess.CalledProcessError,
        context: ErrorContext,
        default: Type[ReconcileError]
    ) -> ReconcileError:
        """Classify a failed external command by its output.

        Args:
            error: The CalledProcessError
            context: Error context
            default: Error class used when no pattern matches

        Returns:
            Categorized ReconcileError
        """
        output = "\n".join(
            part for part in (error.stderr, error.output) if isinstance(part, str) and part
        ).strip()
        context.command = context.command or _format_command(error.cmd)
        context.exit_code = error.returncode

        for info in self.TOOL_ERROR_PATTERNS:
            if info['pattern'].search(output):
                error_cls = self.CATEGORY_ERRORS.get(info['category'], default)
                return error_cls(
                    f"{info['message']}: {_last_line(output)}",
                    context=context,
                    cause=error,
                    suggestions=info['suggestions']
                )

        detail = _last_line(output) or f"exit status {error.returncode}"
        return default(
            f"Command failed ({error.returncode}): {detail}",
            context=context,
            cause=error
        )


def _format_command(cmd: Any) -> str:
    if isinstance(cmd, (list, tuple)):
        return " ".join(str(part) for part in cmd)
    return str(cmd)


def _last_line(output: str) -> str:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[-1] if lines else ""


# Global error handler instance
error_handler = ErrorHandler()
