"""Bounded execution of external command-line tools."""

import shlex
import subprocess
import time
from typing import Optional, Sequence, Type

from stackkeeper.utils.errors import (
    ErrorContext,
    OperationTimeoutError,
    ReconcileError,
    error_handler,
)
from stackkeeper.utils.logging import get_logger

logger = get_logger(__name__)


def run_command(
    cmd: Sequence[str],
    *,
    timeout: float,
    operation: str,
    error_cls: Type[ReconcileError] = ReconcileError,
    input_text: Optional[str] = None
) -> subprocess.CompletedProcess:
    """Run ``cmd`` and raise a classified error if it fails or hangs.

    Args:
        cmd: Command and arguments
        timeout: Seconds before the process is killed
        operation: Adapter operation name, for error context
        error_cls: Error class for failures that match no known pattern
        input_text: Optional stdin

    Returns:
        Completed process with captured text output

    Raises:
        OperationTimeoutError: If the command exceeds ``timeout``
        ReconcileError: ``error_cls`` or a more specific class on failure
    """
    cmd = [str(part) for part in cmd]
    context = ErrorContext(operation=operation, command=shlex.join(cmd))
    logger.debug(f"Running: {context.command}")

    try:
        return subprocess.run(
            cmd,
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input_text,
        )
    except FileNotFoundError as e:
        raise error_cls(
            f"Executable not found: {cmd[0]}",
            context=context,
            cause=e,
            suggestions=[f"Install {cmd[0]} or configure its path"]
        ) from e
    except (subprocess.TimeoutExpired, subprocess.CalledProcessError) as e:
        raise error_handler.handle_exception(e, context, default=error_cls) from e


def remaining_time(deadline: float, operation: str) -> float:
    """Seconds left before ``deadline`` (a ``time.monotonic`` value).

    Raises:
        OperationTimeoutError: If the deadline has passed
    """
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise OperationTimeoutError(
            f"{operation} exceeded its timeout",
            context=ErrorContext(operation=operation)
        )
    return remaining
