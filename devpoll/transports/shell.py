# ═══════════════════════════════════════════════════════════════
# DevPoll - Interactive Shell Transport
# Prompt-driven interactive sessions over SSH
# ═══════════════════════════════════════════════════════════════

import asyncio
import re
from typing import List, Optional, Tuple

import asyncssh

from ..core.exceptions import ConfigurationError, TerminatorNotFoundError
from .base import BaseTransport
from .command import SSHConnectionMixin
from .models import Operation, RawResult, SSHConfig, TransportKind

READ_CHUNK_SIZE = 4096


class ShellTransport(SSHConnectionMixin, BaseTransport):
    """
    Interactive shell over one persistent SSH channel.

    Each input line of an operation is written to the channel and output
    is accumulated until the terminator pattern matches the cleaned
    output. Output read after each line becomes one block.

    Menu mode (``resend_ceiling > 0``): when the terminator does not show
    up within a scan window, the line is written again, up to the ceiling.
    Devices that drop keystrokes while repainting a menu need this.

    Only one operation is in flight per channel.

    Usage:
        config = SSHConfig(host="10.0.0.1", username="admin",
                           password=SecretStr("secret"), prompt=r"[>#]\\s*$")
        async with ShellTransport(config) as transport:
            result = await transport.send(
                Operation(input_lines=["show version"], terminator=r"[>#]\\s*$")
            )
    """

    kind = TransportKind.SHELL
    sequential = True

    def __init__(self, config: SSHConfig):
        super().__init__(config)
        self.config: SSHConfig = config
        self._conn: Optional['asyncssh.SSHClientConnection'] = None
        self._process: Optional['asyncssh.SSHClientProcess'] = None
        self.prompt_signature: Optional[str] = None
        # Set while an operation is in flight; a failed or cancelled one
        # leaves unread output behind on the channel
        self._stale = False

    # ═══════════════════════════════════════════════════════════
    # Channel Management
    # ═══════════════════════════════════════════════════════════

    async def _open(self) -> None:
        self._conn = await self._connect_ssh()
        try:
            await self._start_shell()
        except Exception:
            await self._close()
            raise

    async def _start_shell(self) -> None:
        """Start a fresh shell process on the open connection."""
        try:
            self._process = await self._conn.create_process(
                term_type=self.config.term_type,
                encoding='utf-8',
                errors='replace',
            )
        except (asyncssh.Error, OSError) as e:
            raise self._error(f"Cannot open interactive shell: {e}", original_error=e)

        if self.config.prompt:
            match, _ = await self._read_until(self.config.prompt, self.config.timeout)
            self.prompt_signature = match.group(0).strip()
            self.logger.debug(f"Shell ready, prompt signature {self.prompt_signature!r}")
        self._stale = False

    async def _close(self) -> None:
        if self._process is not None:
            self._process.close()
            self._process = None
        conn, self._conn = self._conn, None
        await self._disconnect_ssh(conn)

    def _is_open(self) -> bool:
        return self._process is not None and self._conn is not None and not self._conn.is_closed()

    # ═══════════════════════════════════════════════════════════
    # Interaction
    # ═══════════════════════════════════════════════════════════

    async def _send(self, operation: Operation) -> RawResult:
        terminator = operation.terminator or self.config.prompt
        if not terminator:
            raise ConfigurationError(
                "Interactive shell operations need a terminator or a configured prompt",
                details={"operation": operation.label}
            )

        if self._stale:
            self.logger.info("Previous operation did not finish cleanly, restarting shell")
            self._process.close()
            self._process = None
            await self._start_shell()

        lines = operation.input_lines or [""]
        blocks: List[str] = []
        matched: Optional[str] = None

        self._stale = True
        # Split the timeout evenly across lines
        line_timeout = operation.timeout / len(lines)

        for line in lines:
            if operation.resend_ceiling > 0:
                match, block = await self._send_menu_line(line, terminator, operation.resend_ceiling, line_timeout)
            else:
                self._write(line)
                match, block = await self._read_until(terminator, line_timeout)
            blocks.append(block)
            matched = match.group(0)

        self._stale = False
        return self._result(
            operation,
            output="\n".join(blocks),
            stdout="\n".join(blocks),
            blocks=blocks,
            matched_terminator=matched,
        )

    async def _send_menu_line(
        self,
        line: str,
        terminator: str,
        ceiling: int,
        timeout: float
    ) -> Tuple[re.Match, str]:
        """Write a line and resend it until the terminator shows up or the ceiling is hit."""
        window = timeout / (ceiling + 1)
        collected = ""

        for attempt in range(ceiling + 1):
            if attempt > 0:
                self.logger.debug(f"Terminator not seen, resending ({attempt}/{ceiling})")
            self._write(line)
            match, block = await self._read_until(terminator, window, raise_timeout=False)
            if match is not None:
                return match, collected + block
            collected += block

        raise TerminatorNotFoundError(
            terminator=terminator,
            attempts=ceiling + 1,
            transport=self.kind.value,
            partial_output=collected,
        )

    def _write(self, line: str) -> None:
        if line and line[-1] in "\r\n":
            self._process.stdin.write(line)
        else:
            self._process.stdin.write(line + self.config.line_ending)

    async def _read_until(
        self,
        pattern: str,
        timeout: float,
        raise_timeout: bool = True
    ) -> Tuple[Optional[re.Match], str]:
        """
        Accumulate output until ``pattern`` matches the cleaned buffer.

        Returns:
            Tuple of (match, cleaned output). ``match`` is None only when
            ``raise_timeout`` is False and the window elapsed.

        Raises:
            TransportError: On channel EOF, or on timeout when ``raise_timeout`` is set
        """
        regex = re.compile(pattern, re.MULTILINE)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        buffer = ""

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                chunk = await asyncio.wait_for(self._process.stdout.read(READ_CHUNK_SIZE), remaining)
            except asyncio.TimeoutError:
                break

            if not chunk:
                raise self._error(
                    "Shell channel closed by device",
                    partial_output=self._sanitize_output(buffer),
                )

            buffer += chunk
            cleaned = self._sanitize_output(buffer)
            match = regex.search(cleaned)
            if match:
                return match, cleaned

        cleaned = self._sanitize_output(buffer)
        if raise_timeout:
            raise self._error(
                f"Terminator {pattern!r} not seen within {timeout:.1f}s",
                timed_out=True,
                partial_output=cleaned,
            )
        return None, cleaned
