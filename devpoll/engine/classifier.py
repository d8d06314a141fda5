# ═══════════════════════════════════════════════════════════════
# DevPoll - Error Classifier
# Maps raw failure signals onto the four reportable outcomes
# ═══════════════════════════════════════════════════════════════

import asyncio
import re
from dataclasses import dataclass
from typing import Optional

from ..core.exceptions import (
    AuthenticationFailed,
    ErrorClassification,
    OperationFailed,
    PayloadParseError,
    TransportError,
)
from ..transports.models import RawResult


AUTH_STATUS_CODES = frozenset({401, 403})
UNAVAILABLE_STATUS_CODES = frozenset({404, 410, 502, 503, 504})

CREDENTIAL_REJECTION = re.compile(
    r"(invalid|incorrect|wrong|bad)\s+(user\s*name|username|password|credentials|login)"
    r"|authentication\s+failed"
    r"|login\s+(failed|incorrect)"
    r"|permission\s+denied"
    r"|not\s+authori[sz]ed"
    r"|unauthori[sz]ed",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class FailureSignal:
    """Everything the classifier looks at, stripped of transport specifics."""
    status_code: Optional[int] = None
    exit_code: Optional[int] = None
    timed_out: bool = False
    partial_output: str = ""
    auth_rejected: bool = False
    unreachable: bool = False
    parse_failed: bool = False
    message: str = ""

    @classmethod
    def from_exception(cls, error: BaseException) -> "FailureSignal":
        """Build a signal from any exception raised below the cycle."""
        if isinstance(error, OperationFailed) and isinstance(error.signal, FailureSignal):
            return error.signal

        if isinstance(error, TransportError):
            return cls(
                status_code=error.status_code,
                exit_code=error.exit_code,
                timed_out=error.timed_out,
                partial_output=error.partial_output,
                auth_rejected=error.auth_rejected,
                unreachable=error.unreachable,
                message=error.message,
            )

        if isinstance(error, AuthenticationFailed):
            return cls(auth_rejected=True, message=error.message)

        if isinstance(error, PayloadParseError):
            return cls(parse_failed=True, message=error.message)

        if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
            return cls(timed_out=True, message=str(error) or "timed out")

        if isinstance(error, ConnectionError):
            return cls(unreachable=True, message=str(error))

        return cls(message=str(error) or type(error).__name__)

    @classmethod
    def from_result(cls, result: RawResult, reason: str = "") -> "FailureSignal":
        """Build a signal from a result the success predicate rejected."""
        return cls(
            status_code=result.status_code,
            exit_code=result.exit_code,
            partial_output=result.output,
            message=reason,
        )


def classify(signal: FailureSignal) -> ErrorClassification:
    """
    Classify a failure signal.

    Priority: authentication, then resource availability, then parsing,
    then generic. The function is pure; the same signal always yields the
    same classification.
    """
    if (
        signal.auth_rejected
        or signal.status_code in AUTH_STATUS_CODES
        or CREDENTIAL_REJECTION.search(signal.message)
        or CREDENTIAL_REJECTION.search(signal.partial_output)
    ):
        return ErrorClassification.AUTHENTICATION_ERROR

    if (
        signal.unreachable
        or signal.status_code in UNAVAILABLE_STATUS_CODES
        or (signal.timed_out and not signal.partial_output.strip())
    ):
        return ErrorClassification.RESOURCE_UNAVAILABLE

    if signal.parse_failed:
        return ErrorClassification.PARSING_ERROR

    return ErrorClassification.GENERIC_ERROR


def classify_exception(error: BaseException) -> ErrorClassification:
    """Classify an exception, honouring a classification already attached to it."""
    if isinstance(error, OperationFailed) and isinstance(error.classification, ErrorClassification):
        return error.classification
    return classify(FailureSignal.from_exception(error))
