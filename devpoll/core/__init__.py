# ═══════════════════════════════════════════════════════════════
# DevPoll - Core
# Configuration, logging and the exception hierarchy
# ═══════════════════════════════════════════════════════════════

from .config import Settings, get_settings
from .exceptions import (
    DevPollError,
    ErrorClassification,
    ConfigurationError,
    TransportError,
    TransportNotOpenError,
    TerminatorNotFoundError,
    PayloadParseError,
    AuthenticationFailed,
    SessionNotReadyError,
    OperationFailed,
    SinkValidationError,
    DuplicateRecordError,
    wrap_exception,
)
from .logging import (
    configure_logging,
    get_logger,
    logging_context,
    audit_logger,
    performance_logger,
)

__all__ = [
    "Settings",
    "get_settings",
    "DevPollError",
    "ErrorClassification",
    "ConfigurationError",
    "TransportError",
    "TransportNotOpenError",
    "TerminatorNotFoundError",
    "PayloadParseError",
    "AuthenticationFailed",
    "SessionNotReadyError",
    "OperationFailed",
    "SinkValidationError",
    "DuplicateRecordError",
    "wrap_exception",
    "configure_logging",
    "get_logger",
    "logging_context",
    "audit_logger",
    "performance_logger",
]
