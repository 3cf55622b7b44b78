"""Utility modules for logging, error handling and backoff."""

from stackkeeper.utils.backoff import Backoff, CircuitBreaker, jittered
from stackkeeper.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ReconcileError,
    ValidationError,
    IssuanceError,
    ActivationError,
    DeploymentError,
    ConflictError,
    OperationTimeoutError,
    StateError,
    ResourceNotFoundError,
    ErrorHandler,
    error_handler
)
from stackkeeper.utils.logging import get_logger, setup_logging

__all__ = [
    # Backoff
    'Backoff',
    'CircuitBreaker',
    'jittered',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ReconcileError',
    'ValidationError',
    'IssuanceError',
    'ActivationError',
    'DeploymentError',
    'ConflictError',
    'OperationTimeoutError',
    'StateError',
    'ResourceNotFoundError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
]
