# ═══════════════════════════════════════════════════════════════
# DevPoll - Base Transport
# Abstract base class for all transport clients
# ═══════════════════════════════════════════════════════════════

import asyncio
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional

from ..core.exceptions import TransportError, TransportNotOpenError
from ..core.logging import get_logger
from .models import BaseConnectionConfig, Operation, RawResult, TransportKind


# CSI/OSC escape sequences, then any remaining C0 control byte except \t \n \r
_ANSI_ESCAPE = re.compile(r'\x1B(?:\][^\x07\x1B]*(?:\x07|\x1B\\)|[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]')

MAX_OUTPUT_LENGTH = 1024 * 1024


def strip_control_sequences(output: str) -> str:
    """Remove ANSI escape codes and stray control bytes from terminal output."""
    if not output:
        return ""
    output = _ANSI_ESCAPE.sub('', output)
    return _CONTROL_CHARS.sub('', output)


def split_blocks(output: str) -> List[str]:
    """Split output on blank lines into non-empty blocks."""
    blocks = re.split(r'\r?\n\s*\r?\n', output)
    return [block.strip() for block in blocks if block.strip()]


def decode_output(output: bytes, encoding: str = "utf-8") -> str:
    """Decode device output as ``encoding``, then UTF-8, then latin-1."""
    if not output:
        return ""

    for candidate in (encoding, 'utf-8'):
        try:
            return output.decode(candidate)
        except (UnicodeDecodeError, LookupError):
            continue

    # latin-1 maps every byte
    return output.decode('latin-1')


class BaseTransport(ABC):
    """
    Abstract base class for all transports.

    A transport owns one channel to one device. It knows nothing about
    retries or classification: it opens, sends, and closes, and raises
    TransportError with the raw signal when something goes wrong.

    Subclasses must implement:
    - _open(): Establish the channel
    - _close(): Release the channel
    - _send(): Issue one operation and return its RawResult
    - _is_open(): Check channel status

    Usage:
        async with HttpTransport(config) as transport:
            result = await transport.send(Operation(target="/status"))
    """

    kind: TransportKind = TransportKind.HTTP

    # Only one operation may be in flight on a sequential channel
    sequential: bool = False

    def __init__(self, config: BaseConnectionConfig):
        self.config = config
        self.logger = get_logger(f"devpoll.transports.{self.kind.value}")
        self._opened = False
        self._lock = asyncio.Lock()
        self._send_lock = asyncio.Lock()

    # ═══════════════════════════════════════════════════════════
    # Context Manager Protocol
    # ═══════════════════════════════════════════════════════════

    async def __aenter__(self) -> 'BaseTransport':
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ═══════════════════════════════════════════════════════════
    # Channel Management
    # ═══════════════════════════════════════════════════════════

    async def open(self) -> None:
        """
        Open the channel to the device.

        Raises:
            TransportError: If the device is unreachable or rejects the credentials
        """
        async with self._lock:
            if self._opened:
                return

            self.logger.debug(f"Opening {self.kind.value} channel to {self.config.host}")
            try:
                await self._open()
            except TransportError:
                self._opened = False
                raise
            self._opened = True
            self.logger.debug(f"Opened {self.kind.value} channel to {self.config.host}")

    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
        async with self._lock:
            if not self._opened:
                return

            try:
                await self._close()
            except Exception as e:
                self.logger.warning(f"Error while closing {self.kind.value} channel: {e}")
            finally:
                self._opened = False
            self.logger.debug(f"Closed {self.kind.value} channel to {self.config.host}")

    @property
    def is_open(self) -> bool:
        return self._opened and self._is_open()

    # ═══════════════════════════════════════════════════════════
    # Abstract Methods
    # ═══════════════════════════════════════════════════════════

    @abstractmethod
    async def _open(self) -> None:
        """Establish the channel."""

    @abstractmethod
    async def _close(self) -> None:
        """Release the channel."""

    @abstractmethod
    async def _send(self, operation: Operation) -> RawResult:
        """Issue one operation and return its raw result."""

    @abstractmethod
    def _is_open(self) -> bool:
        """Check if the underlying channel is still usable."""

    # ═══════════════════════════════════════════════════════════
    # Main Interface
    # ═══════════════════════════════════════════════════════════

    async def send(self, operation: Operation) -> RawResult:
        """
        Send one operation over the open channel.

        Args:
            operation: The operation to issue

        Returns:
            RawResult with output and status metadata

        Raises:
            TransportNotOpenError: If open() was not called
            TransportError: On any transport level failure
        """
        async with self.reserve():
            return await self.send_reserved(operation)

    @asynccontextmanager
    async def reserve(self):
        """
        Hold the channel for one operation.

        Sequential transports admit one operation at a time; callers that
        put a deadline on an operation take the reservation first so time
        spent queued is not charged to it. No-op on concurrent transports.
        """
        if not self.sequential:
            yield
            return
        async with self._send_lock:
            yield

    async def send_reserved(self, operation: Operation) -> RawResult:
        """Like send(), for a caller already holding reserve()."""
        if not self.is_open:
            raise TransportNotOpenError(self.kind.value)

        started_at = datetime.now(timezone.utc)
        result = await self._send(operation)

        completed_at = datetime.now(timezone.utc)
        result.started_at = started_at
        result.completed_at = completed_at
        result.elapsed_ms = int((completed_at - started_at).total_seconds() * 1000)
        return result

    # ═══════════════════════════════════════════════════════════
    # Helper Methods
    # ═══════════════════════════════════════════════════════════

    def _result(self, operation: Operation, **fields: Any) -> RawResult:
        return RawResult(
            operation_id=operation.id,
            operation_name=operation.label,
            kind=self.kind,
            **fields
        )

    def _error(self, message: str, original_error: Optional[Exception] = None, **fields: Any) -> TransportError:
        return TransportError(
            message=message,
            transport=self.kind.value,
            original_error=original_error,
            **fields
        )

    def _sanitize_output(self, output: str) -> str:
        """Strip control sequences and bound the output length."""
        output = strip_control_sequences(output)
        if len(output) > MAX_OUTPUT_LENGTH:
            output = output[:MAX_OUTPUT_LENGTH]
        return output

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(host={self.config.host}, open={self._opened})>"
