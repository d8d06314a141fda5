# ═══════════════════════════════════════════════════════════════
# DevPoll - Terminal Transport
# Line-oriented terminal sessions over telnet
# ═══════════════════════════════════════════════════════════════

import asyncio
import re
from typing import Awaitable, Callable, Optional, Tuple

from ..core.exceptions import ConfigurationError
from .base import BaseTransport, decode_output
from .models import Operation, RawResult, TerminalConfig, TransportKind

READ_CHUNK_SIZE = 4096

Connector = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


class TelnetCodec:
    """
    Minimal telnet (RFC 854) handling for devices that negotiate options.

    Incoming IAC sequences are stripped from the data stream. Every option
    offer is refused (WILL -> DONT, DO -> WONT) so the session stays a
    plain NVT. Incomplete sequences are carried over to the next chunk.
    """

    IAC = 0xFF
    DONT = 0xFE
    DO = 0xFD
    WONT = 0xFC
    WILL = 0xFB
    SB = 0xFA
    SE = 0xF0

    def __init__(self):
        self._carry = bytearray()

    def feed(self, data: bytes) -> Tuple[bytes, bytes]:
        """
        Parse a received chunk.

        Returns:
            Tuple of (clean data, negotiation replies to send back)
        """
        buf = self._carry + data
        self._carry = bytearray()
        clean = bytearray()
        replies = bytearray()
        i = 0

        while i < len(buf):
            if buf[i] != self.IAC:
                clean.append(buf[i])
                i += 1
                continue

            if i + 1 >= len(buf):
                self._carry.extend(buf[i:])
                break

            cmd = buf[i + 1]

            if cmd == self.IAC:
                clean.append(self.IAC)
                i += 2
            elif cmd in (self.WILL, self.WONT, self.DO, self.DONT):
                if i + 2 >= len(buf):
                    self._carry.extend(buf[i:])
                    break
                option = buf[i + 2]
                if cmd == self.WILL:
                    replies.extend((self.IAC, self.DONT, option))
                elif cmd == self.DO:
                    replies.extend((self.IAC, self.WONT, option))
                i += 3
            elif cmd == self.SB:
                end = buf.find(bytes((self.IAC, self.SE)), i + 2)
                if end == -1:
                    self._carry.extend(buf[i:])
                    break
                i = end + 2
            else:
                # NOP, GA, AYT and friends
                i += 2

        return bytes(clean), bytes(replies)

    def escape(self, data: bytes) -> bytes:
        """Double literal 0xFF bytes on the way out."""
        return data.replace(bytes((self.IAC,)), bytes((self.IAC, self.IAC)))


class TerminalTransport(BaseTransport):
    """
    Line-oriented terminal transport (telnet).

    Each send opens a fresh TCP connection, writes the login template
    followed by the operation's navigation keystrokes as one stream, and
    reads until the terminator pattern matches or the timeout elapses.

    Usage:
        config = TerminalConfig(host="10.0.0.9", username="QSECOFR",
                                password=SecretStr("secret"))
        async with TerminalTransport(config) as transport:
            result = await transport.send(
                Operation(input_lines=["WRKACTJOB\\r\\n"], terminator=r"Bottom")
            )
    """

    kind = TransportKind.TERMINAL
    sequential = True

    def __init__(self, config: TerminalConfig, connector: Optional[Connector] = None):
        """
        Initialize the terminal transport.

        Args:
            config: Terminal connection configuration
            connector: Replacement for ``asyncio.open_connection``
        """
        super().__init__(config)
        self.config: TerminalConfig = config
        self._connector: Connector = connector or asyncio.open_connection
        self._ready = False

    # ═══════════════════════════════════════════════════════════
    # Channel Management
    # ═══════════════════════════════════════════════════════════

    async def _open(self) -> None:
        # Connections are made per send
        self._ready = True

    async def _close(self) -> None:
        self._ready = False

    def _is_open(self) -> bool:
        return self._ready

    def _login_prefix(self) -> str:
        password = self.config.password.get_secret_value() if self.config.password else ""
        return self.config.login_template.format(
            username=self.config.username or "",
            password=password,
        )

    # ═══════════════════════════════════════════════════════════
    # Interaction
    # ═══════════════════════════════════════════════════════════

    async def _send(self, operation: Operation) -> RawResult:
        if not operation.terminator:
            raise ConfigurationError(
                "Terminal operations need a terminator pattern",
                details={"operation": operation.label}
            )

        reader, writer = await self._connect()
        codec = TelnetCodec() if self.config.negotiate else None

        try:
            payload = (self._login_prefix() + "".join(operation.input_lines)).encode(self.config.encoding)
            writer.write(codec.escape(payload) if codec else payload)
            await writer.drain()

            match, output = await self._read_until(reader, writer, codec, operation)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        return self._result(
            operation,
            output=output,
            stdout=output,
            blocks=[output],
            matched_terminator=match.group(0),
        )

    async def _connect(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(
                self._connector(self.config.host, self.config.port),
                timeout=self.config.timeout
            )
        except asyncio.TimeoutError as e:
            raise self._error(
                f"Telnet connection to {self.config.host}:{self.config.port} timed out",
                original_error=e,
                timed_out=True,
                unreachable=True
            )
        except OSError as e:
            raise self._error(
                f"Cannot connect to {self.config.host}:{self.config.port}: {e}",
                original_error=e,
                unreachable=True
            )

    async def _read_until(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        codec: Optional[TelnetCodec],
        operation: Operation
    ) -> Tuple[re.Match, str]:
        regex = re.compile(operation.terminator, re.MULTILINE)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + operation.timeout
        received = bytearray()

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                chunk = await asyncio.wait_for(reader.read(READ_CHUNK_SIZE), remaining)
            except asyncio.TimeoutError:
                break

            if not chunk:
                raise self._error(
                    "Terminal connection closed by device",
                    partial_output=self._decode(received),
                )

            if codec is not None:
                chunk, replies = codec.feed(chunk)
                if replies:
                    writer.write(replies)
                    await writer.drain()

            received.extend(chunk)
            output = self._decode(received)
            match = regex.search(output)
            if match:
                return match, output

        raise self._error(
            f"Prompt {operation.terminator!r} not seen within {operation.timeout:.1f}s",
            timed_out=True,
            partial_output=self._decode(received),
        )

    def _decode(self, data: bytearray) -> str:
        return self._sanitize_output(decode_output(bytes(data), self.config.encoding))
