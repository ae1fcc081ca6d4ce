"""
Error taxonomy and reporting for vmbundle

Every failure a command can hit is a VMBundleError subclass carrying a
stable code (VMB-E###), a category and optional details and suggestions.
The command line hands errors to the ErrorHandler, which logs them and
prints a single "Error: ..." line.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Any

from rich.console import Console

logger = logging.getLogger(__name__)

error_console = Console(stderr=True)


class ErrorSeverity(Enum):
    WARNING = "warning"     # Reported, operation still succeeded
    ERROR = "error"         # Current operation failed
    CRITICAL = "critical"   # Bundle may need manual attention


class ErrorCategory(Enum):
    VALIDATION = "validation"
    RUNNING = "running"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    ENGINE = "engine"
    STORAGE = "storage"
    UNKNOWN = "unknown"


class VMBundleError(Exception):
    """
    Base class for vmbundle failures.

    The message is shown to the user verbatim. Details and suggestions are
    only displayed in verbose mode; the context dict is only logged.
    """

    def __init__(self, message: str, code: str = "VMB-E000",
                 severity: ErrorSeverity = ErrorSeverity.ERROR,
                 category: ErrorCategory = ErrorCategory.UNKNOWN,
                 details: Optional[str] = None,
                 suggestions: Optional[List[str]] = None,
                 context: Optional[Dict[str, Any]] = None,
                 original_exception: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.severity = severity
        self.category = category
        self.details = details
        self.suggestions = list(suggestions or [])
        self.context = dict(context or {})
        self.original_exception = original_exception


class ValidationError(VMBundleError):
    """Invalid arguments or settings"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.VALIDATION)
        kwargs.setdefault('code', 'VMB-E100')
        super().__init__(message, **kwargs)


class ConfigDecodeError(ValidationError):
    """config.json exists but cannot be decoded"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('code', 'VMB-E101')
        kwargs.setdefault('suggestions', ["Restore config.json from a snapshot of this VM."])
        super().__init__(message, **kwargs)


class AlreadyRunningError(VMBundleError):
    """The bundle is owned by a live session"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.RUNNING)
        kwargs.setdefault('code', 'VMB-E200')
        kwargs.setdefault('suggestions', ["Check the owner with 'vmbundle status NAME'."])
        super().__init__(message, **kwargs)


class NotFoundError(VMBundleError):
    """A bundle, config file or snapshot does not exist"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.NOT_FOUND)
        kwargs.setdefault('code', 'VMB-E300')
        super().__init__(message, **kwargs)


class ConflictError(VMBundleError):
    """The target of a create operation already exists"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.CONFLICT)
        kwargs.setdefault('code', 'VMB-E400')
        super().__init__(message, **kwargs)


class EngineError(VMBundleError):
    """Failure reported by the hypervisor engine, message passed through"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.ENGINE)
        kwargs.setdefault('code', 'VMB-E500')
        super().__init__(message, **kwargs)


class StorageError(VMBundleError):
    """Filesystem failure while reading or writing bundle state"""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.STORAGE)
        kwargs.setdefault('code', 'VMB-E600')
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)


def as_vmbundle_error(exception: BaseException) -> VMBundleError:
    """Map a foreign exception onto the vmbundle taxonomy."""
    if isinstance(exception, VMBundleError):
        return exception
    if isinstance(exception, FileNotFoundError):
        return NotFoundError(str(exception), original_exception=exception)
    if isinstance(exception, OSError):
        return StorageError(str(exception), original_exception=exception)
    if isinstance(exception, ValueError):
        return ValidationError(str(exception), original_exception=exception)
    return VMBundleError(f"Unexpected error: {exception}", severity=ErrorSeverity.CRITICAL,
                         original_exception=exception)


def as_engine_error(error: BaseException) -> VMBundleError:
    """Engine failures surface as EngineError with the engine's own message."""
    if isinstance(error, VMBundleError):
        return error
    return EngineError(str(error) or error.__class__.__name__, original_exception=error)


class ErrorHandler:
    """
    Logs errors and reports them on stderr.

    The most recent errors are kept in `recent` so an embedding host can
    show them after the fact.
    """

    HISTORY_LIMIT = 100

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.recent: List[VMBundleError] = []

    def handle_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> VMBundleError:
        """Log and display an error, returning it as a VMBundleError."""
        error = as_vmbundle_error(error)
        if context:
            error.context.update(context)
        self._log(error)
        self.recent.append(error)
        del self.recent[:-self.HISTORY_LIMIT]
        self.display_error(error)
        return error

    def _log(self, error: VMBundleError) -> None:
        line = f"[{error.code}] {error.category.value}: {error}"
        if error.context:
            line += f" {error.context}"
        if error.severity == ErrorSeverity.WARNING:
            logger.warning(line)
        else:
            level = logging.CRITICAL if error.severity == ErrorSeverity.CRITICAL else logging.ERROR
            logger.log(level, line, exc_info=error.original_exception)

    def display_error(self, error: VMBundleError) -> None:
        error_console.print(f"Error: {error}", style="bold red", markup=False, highlight=False, soft_wrap=True)
        if not self.verbose:
            return
        if error.details:
            error_console.print(f"  {error.details}", style="dim", markup=False, soft_wrap=True)
        for suggestion in error.suggestions:
            error_console.print(f"  • {suggestion}", style="yellow", markup=False, soft_wrap=True)


_error_handler = None


def get_error_handler() -> ErrorHandler:
    """The process-wide error handler used by the command line"""
    global _error_handler
    if _error_handler is None:
        _error_handler = ErrorHandler()
    return _error_handler
