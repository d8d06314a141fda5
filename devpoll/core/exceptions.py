# ═══════════════════════════════════════════════════════════════
# DevPoll - Custom Exceptions
# Centralized exception hierarchy for transports, sessions and reporting
# ═══════════════════════════════════════════════════════════════

from enum import Enum
from typing import Any, Dict, Optional


class ErrorClassification(str, Enum):
    """The only failure outcomes a cycle ever reports."""
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    RESOURCE_UNAVAILABLE = "RESOURCE_UNAVAILABLE"
    PARSING_ERROR = "PARSING_ERROR"
    GENERIC_ERROR = "GENERIC_ERROR"


class DevPollError(Exception):
    """
    Base exception for all DevPoll errors.

    All custom exceptions inherit from this class to enable
    unified error handling at the polling cycle boundary.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Additional error details
        original_error: Original exception if wrapping another error
    """

    def __init__(
        self,
        message: str,
        error_code: str = "DEVPOLL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.original_error = original_error
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for result payloads."""
        return {
            "error": True,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.error_code}, message='{self.message}')"


class ConfigurationError(DevPollError):
    """Invalid driver, operation or parameter configuration."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details=details
        )


# ═══════════════════════════════════════════════════════════════
# Transport Exceptions
# ═══════════════════════════════════════════════════════════════

class TransportError(DevPollError):
    """
    Failure raised by a transport on open or send.

    Carries the raw signal the error classifier needs: status code,
    exit code, timeout flag, partial output and the explicit
    auth-rejected / unreachable flags set by the transport itself.
    """

    def __init__(
        self,
        message: str,
        transport: str = "unknown",
        status_code: Optional[int] = None,
        exit_code: Optional[int] = None,
        timed_out: bool = False,
        partial_output: str = "",
        auth_rejected: bool = False,
        unreachable: bool = False,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        self.transport = transport
        self.status_code = status_code
        self.exit_code = exit_code
        self.timed_out = timed_out
        self.partial_output = partial_output
        self.auth_rejected = auth_rejected
        self.unreachable = unreachable
        super().__init__(
            message=message,
            error_code=f"TRANSPORT_ERROR_{transport.upper()}",
            details={
                "transport": transport,
                "status_code": status_code,
                "exit_code": exit_code,
                "timed_out": timed_out,
                **(details or {})
            },
            original_error=original_error
        )


class TransportNotOpenError(TransportError):
    """Send attempted on a transport that is not open."""

    def __init__(self, transport: str = "unknown"):
        super().__init__(
            message=f"{transport} transport is not open. Call open() first.",
            transport=transport
        )
        self.error_code = "TRANSPORT_NOT_OPEN"


class TerminatorNotFoundError(TransportError):
    """
    The expected prompt/terminator never appeared in the output.

    Raised when a menu resend ceiling is exhausted: the device kept
    answering, so this is not a timeout of the channel itself.
    """

    def __init__(
        self,
        terminator: str,
        attempts: int,
        transport: str = "shell",
        partial_output: str = ""
    ):
        super().__init__(
            message=f"Terminator {terminator!r} not found after {attempts} attempt(s)",
            transport=transport,
            partial_output=partial_output,
            details={"terminator": terminator, "attempts": attempts}
        )
        self.error_code = "TERMINATOR_NOT_FOUND"
        self.terminator = terminator
        self.attempts = attempts


# ═══════════════════════════════════════════════════════════════
# Session / Operation Exceptions
# ═══════════════════════════════════════════════════════════════

class PayloadParseError(DevPollError):
    """Payload present but structurally unusable."""

    def __init__(
        self,
        message: str = "Failed to parse payload",
        shape: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            error_code="PARSING_ERROR",
            details={"shape": shape, **(details or {})},
            original_error=original_error
        )
        self.shape = shape


class AuthenticationFailed(DevPollError):
    """Credentials were rejected, or a login step could not complete."""

    def __init__(
        self,
        message: str = "Authentication failed",
        step: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            error_code="AUTHENTICATION_ERROR",
            details={"step": step, **(details or {})},
            original_error=original_error
        )
        self.step = step


class SessionNotReadyError(DevPollError):
    """An operation was issued against an unauthenticated session."""

    def __init__(self, session_id: Optional[str] = None):
        super().__init__(
            message="Session has not completed authentication",
            error_code="SESSION_NOT_READY",
            details={"session_id": session_id}
        )


class OperationFailed(DevPollError):
    """
    Terminal failure of one operation after its retry budget was spent.

    The classification is final for the cycle and is propagated
    unmodified by every layer above the executor.
    """

    def __init__(
        self,
        classification: ErrorClassification,
        message: str,
        operation: Optional[str] = None,
        attempts: int = 0,
        signal: Any = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            error_code=classification.value,
            details={"operation": operation, "attempts": attempts},
            original_error=original_error
        )
        self.classification = classification
        self.operation = operation
        self.attempts = attempts
        self.signal = signal


# ═══════════════════════════════════════════════════════════════
# Reporting Exceptions
# ═══════════════════════════════════════════════════════════════

class SinkValidationError(DevPollError):
    """A reading or table row violates the sink constraints."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            error_code="SINK_VALIDATION_ERROR",
            details=details
        )


class DuplicateRecordError(SinkValidationError):
    """A record id was inserted twice into the same table."""

    def __init__(self, table: str, record_id: str):
        super().__init__(
            message=f"Duplicate record id. Cannot insert record: {record_id}",
            details={"table": table, "record_id": record_id}
        )
        self.error_code = "DUPLICATE_RECORD"
        self.table = table
        self.record_id = record_id


# ═══════════════════════════════════════════════════════════════
# Utility Functions
# ═══════════════════════════════════════════════════════════════

def wrap_exception(
    original: Exception,
    message: Optional[str] = None
) -> DevPollError:
    """
    Wrap a standard exception in a DevPoll exception.

    Args:
        original: The original exception
        message: Optional custom message

    Returns:
        A DevPollError wrapping the original
    """
    return DevPollError(
        message=message or str(original),
        error_code="WRAPPED_ERROR",
        details={"original_type": type(original).__name__},
        original_error=original
    )
