"""Error taxonomy for script execution.

Every failure a run can end with maps onto one of the classes below and,
through :func:`classify_error`, onto a stable :class:`ErrorType` string
that travels in the ``error`` event sent to the host.

Where a Python built-in exception has the same meaning the class also
derives from it, so callers can keep catching ``TimeoutError`` or
``ImportError`` as usual.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError


class ErrorType(Enum):
    """Classification of run failures reported to the host.

    Members:
        IO_ERROR: Script file could not be read.
        MODULE_NOT_ALLOWED: Script asked for a module outside the allow-list.
        SANDBOX_VIOLATION: Script source touches forbidden attributes.
        TIMEOUT: Compile, execution or CAPTCHA budget exceeded.
        VALIDATION_ERROR: Missing wallets/proxy or invalid parameters.
        CAPTCHA_FAILED: Remote CAPTCHA service reported an error.
        EXECUTION_ERROR: Exception raised from the script body.
        UNCAUGHT_EXCEPTION: Exception escaping to the process hooks.
        UNHANDLED_REJECTION: Exception from a never-awaited task.
        STOPPED: Run terminated after a stop request.
        PROCESS_ERROR: Runner process died or broke the protocol.
    """

    IO_ERROR = "io_error"
    MODULE_NOT_ALLOWED = "module_not_allowed"
    SANDBOX_VIOLATION = "sandbox_violation"
    TIMEOUT = "timeout"
    VALIDATION_ERROR = "validation_error"
    CAPTCHA_FAILED = "captcha_failed"
    EXECUTION_ERROR = "execution_error"
    UNCAUGHT_EXCEPTION = "uncaught_exception"
    UNHANDLED_REJECTION = "unhandled_rejection"
    STOPPED = "stopped"
    PROCESS_ERROR = "process_error"


class ScriptError(Exception):
    """Base class for all script-execution errors."""

    error_type: ErrorType = ErrorType.EXECUTION_ERROR


class ScriptIOError(ScriptError, OSError):
    """The script file is missing or unreadable."""

    error_type = ErrorType.IO_ERROR


class ModuleNotAllowedError(ScriptError, ImportError):
    """A sandboxed script requested a module outside the allow-list."""

    error_type = ErrorType.MODULE_NOT_ALLOWED

    def __init__(self, module_name: str) -> None:
        super().__init__(f"Module '{module_name}' is not in the allow-list")
        self.module_name = module_name


class SandboxViolationError(ScriptError):
    """Script source uses a construct the sandbox refuses to compile."""

    error_type = ErrorType.SANDBOX_VIOLATION


class ScriptTimeoutError(ScriptError, TimeoutError):
    """Compile or execution phase exceeded its time budget."""

    error_type = ErrorType.TIMEOUT

    def __init__(self, phase: str, seconds: float) -> None:
        super().__init__(f"Script {phase} timed out after {seconds:g}s")
        self.phase = phase
        self.seconds = seconds


class ScriptValidationError(ScriptError, ValueError):
    """A run request is not admissible (wallets, proxy or parameters).

    Attributes:
        problems: Individual validation messages, one per offending field.
    """

    error_type = ErrorType.VALIDATION_ERROR

    def __init__(self, message: str, problems: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])


class ScriptContractError(ScriptValidationError):
    """Script module does not implement a recognised entry point."""


class ScriptRuntimeError(ScriptError, RuntimeError):
    """Wraps an exception raised from inside a script body."""

    def __init__(self, message: str, original: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.original = original


class ScriptStoppedError(ScriptError):
    """The run did not finish within the grace period after a stop request."""

    error_type = ErrorType.STOPPED


class RunnerProcessError(ScriptError):
    """The runner process exited or broke the protocol without a result."""

    error_type = ErrorType.PROCESS_ERROR


class CaptchaError(ScriptError):
    """Base class for remote CAPTCHA service failures.

    Attributes:
        payload: The raw response from the service, kept for diagnostics.
    """

    error_type = ErrorType.CAPTCHA_FAILED

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.payload = payload or {}


class TaskCreationError(CaptchaError):
    """``createTask`` answered with a non-zero ``errorId``."""


class SolveError(CaptchaError):
    """The solving task failed or returned no token."""


class CaptchaTimeoutError(CaptchaError, TimeoutError):
    """No solution arrived within the polling budget."""

    error_type = ErrorType.TIMEOUT


def classify_error(error: BaseException) -> ErrorType:
    """Map an exception to the :class:`ErrorType` reported to the host.

    Args:
        error: Any exception raised during a run.

    Returns:
        The matching error type; plain exceptions from script code are
        ``EXECUTION_ERROR``.
    """
    if isinstance(error, ScriptError):
        return error.error_type
    if isinstance(error, PydanticValidationError):
        return ErrorType.VALIDATION_ERROR
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(error, (FileNotFoundError, PermissionError, IsADirectoryError)):
        return ErrorType.IO_ERROR
    return ErrorType.EXECUTION_ERROR
