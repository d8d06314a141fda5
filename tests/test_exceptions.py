# ═══════════════════════════════════════════════════════════════
# DevPoll - Exception Tests
# Tests for the exception hierarchy
# ═══════════════════════════════════════════════════════════════

import pytest
from pydantic import ValidationError

from devpoll.core.exceptions import (
    # Base
    DevPollError,
    ErrorClassification,
    ConfigurationError,
    wrap_exception,

    # Transport
    TransportError,
    TransportNotOpenError,
    TerminatorNotFoundError,

    # Session / operation
    PayloadParseError,
    AuthenticationFailed,
    SessionNotReadyError,
    OperationFailed,

    # Reporting
    SinkValidationError,
    DuplicateRecordError,
)
from devpoll.engine import classifier
from devpoll.transports.models import Operation, OperationOutcome


# ═══════════════════════════════════════════════════════════════
# Base Exception Tests
# ═══════════════════════════════════════════════════════════════

class TestDevPollError:
    """Tests for the base exception."""

    def test_basic_creation(self):
        exc = DevPollError("Test error")
        assert exc.message == "Test error"
        assert exc.error_code == "DEVPOLL_ERROR"
        assert exc.details == {}
        assert exc.original_error is None

    def test_to_dict(self):
        exc = DevPollError("Test error", error_code="CUSTOM", details={"key": "value"})
        assert exc.to_dict() == {
            "error": True,
            "error_code": "CUSTOM",
            "message": "Test error",
            "details": {"key": "value"},
        }

    def test_repr(self):
        assert repr(DevPollError("boom")) == "DevPollError(code=DEVPOLL_ERROR, message='boom')"

    def test_str_is_message(self):
        assert str(ConfigurationError("bad option")) == "bad option"

    def test_wrap_exception(self):
        original = ValueError("Original error")
        wrapped = wrap_exception(original)

        assert isinstance(wrapped, DevPollError)
        assert wrapped.message == "Original error"
        assert wrapped.error_code == "WRAPPED_ERROR"
        assert wrapped.details["original_type"] == "ValueError"
        assert wrapped.original_error is original

    def test_wrap_exception_custom_message(self):
        assert wrap_exception(KeyError("x"), "lookup failed").message == "lookup failed"


# ═══════════════════════════════════════════════════════════════
# Transport Exception Tests
# ═══════════════════════════════════════════════════════════════

class TestTransportExceptions:

    def test_transport_error_carries_signal(self):
        exc = TransportError(
            "request failed",
            transport="http",
            status_code=503,
            timed_out=True,
            partial_output="half",
            unreachable=True,
        )
        assert exc.error_code == "TRANSPORT_ERROR_HTTP"
        assert exc.status_code == 503
        assert exc.timed_out is True
        assert exc.partial_output == "half"
        assert exc.unreachable is True
        assert exc.auth_rejected is False
        assert exc.details["status_code"] == 503
        assert exc.details["timed_out"] is True

    def test_transport_not_open(self):
        exc = TransportNotOpenError("shell")
        assert isinstance(exc, TransportError)
        assert exc.error_code == "TRANSPORT_NOT_OPEN"
        assert "open()" in exc.message

    def test_terminator_not_found_is_not_a_timeout(self):
        exc = TerminatorNotFoundError(r"Main Menu", attempts=4, partial_output="Loading...")
        assert isinstance(exc, TransportError)
        assert exc.timed_out is False
        assert exc.attempts == 4
        assert exc.partial_output == "Loading..."
        assert exc.details["terminator"] == "Main Menu"
        assert exc.error_code == "TERMINATOR_NOT_FOUND"


# ═══════════════════════════════════════════════════════════════
# Session / Operation Exception Tests
# ═══════════════════════════════════════════════════════════════

class TestOperationExceptions:

    def test_payload_parse_error(self):
        exc = PayloadParseError("Invalid JSON", shape="json")
        assert exc.error_code == "PARSING_ERROR"
        assert exc.shape == "json"
        assert exc.details["shape"] == "json"

    def test_payload_parse_error_default_message(self):
        assert PayloadParseError().message == "Failed to parse payload"

    def test_authentication_failed(self):
        exc = AuthenticationFailed("nope", step="submit", details={"status_code": 401})
        assert exc.step == "submit"
        assert exc.details == {"step": "submit", "status_code": 401}

    def test_session_not_ready(self):
        exc = SessionNotReadyError("abc")
        assert exc.error_code == "SESSION_NOT_READY"
        assert exc.details["session_id"] == "abc"

    def test_operation_failed_uses_classification_as_code(self):
        exc = OperationFailed(
            ErrorClassification.RESOURCE_UNAVAILABLE,
            "device down",
            operation="status",
            attempts=3,
        )
        assert exc.error_code == "RESOURCE_UNAVAILABLE"
        assert exc.classification is ErrorClassification.RESOURCE_UNAVAILABLE
        assert exc.details == {"operation": "status", "attempts": 3}

    def test_operation_failed_is_catchable_as_base(self):
        with pytest.raises(DevPollError):
            raise OperationFailed(ErrorClassification.GENERIC_ERROR, "boom")

    def test_classifier_shares_the_enum(self):
        assert classifier.ErrorClassification is ErrorClassification

    def test_outcome_classification_is_typed(self):
        outcome = OperationOutcome(operation=Operation(target="/"), classification="PARSING_ERROR")
        assert outcome.classification is ErrorClassification.PARSING_ERROR
        assert not outcome.ok

        with pytest.raises(ValidationError):
            OperationOutcome(operation=Operation(target="/"), classification="TIMEOUT")


# ═══════════════════════════════════════════════════════════════
# Reporting Exception Tests
# ═══════════════════════════════════════════════════════════════

class TestReportingExceptions:

    def test_duplicate_record(self):
        exc = DuplicateRecordError("Disks", "sda")
        assert isinstance(exc, SinkValidationError)
        assert exc.error_code == "DUPLICATE_RECORD"
        assert exc.table == "Disks"
        assert exc.record_id == "sda"
        assert "sda" in exc.message

    def test_sink_validation(self):
        exc = SinkValidationError("bad uid", details={"uid": "table"})
        assert exc.error_code == "SINK_VALIDATION_ERROR"
        assert exc.details["uid"] == "table"
