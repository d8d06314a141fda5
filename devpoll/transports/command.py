# ═══════════════════════════════════════════════════════════════
# DevPoll - SSH Command Transport
# Structured remote command execution over SSH
# ═══════════════════════════════════════════════════════════════

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

import asyncssh

from .base import BaseTransport, decode_output
from .models import Operation, RawResult, SSHConfig, TransportKind


class SSHConnectionMixin:
    """Opens an asyncssh client connection and maps its failures to TransportError."""

    config: SSHConfig

    async def _connect_ssh(self) -> 'asyncssh.SSHClientConnection':
        connect_options: Dict[str, Any] = {
            'host': self.config.host,
            'port': self.config.port,
            'username': self.config.username,
            'known_hosts': self.config.known_hosts_file if self.config.host_key_checking else None,
            'keepalive_interval': self.config.keepalive_interval,
        }

        if self.config.password:
            connect_options['password'] = self.config.password.get_secret_value()

        if self.config.private_key:
            key_path = Path(self.config.private_key).expanduser()
            if key_path.exists():
                connect_options['client_keys'] = [str(key_path)]
                if self.config.private_key_passphrase:
                    connect_options['passphrase'] = self.config.private_key_passphrase.get_secret_value()

        try:
            return await asyncio.wait_for(
                asyncssh.connect(**connect_options),
                timeout=self.config.timeout
            )
        except asyncio.TimeoutError as e:
            raise self._error(
                f"SSH connection timed out after {self.config.timeout}s",
                original_error=e,
                timed_out=True,
                unreachable=True
            )
        except asyncssh.PermissionDenied as e:
            raise self._error(
                "SSH authentication failed: Permission denied",
                original_error=e,
                auth_rejected=True
            )
        except asyncssh.DisconnectError as e:
            raise self._error(f"SSH disconnected: {e}", original_error=e)
        except OSError as e:
            raise self._error(
                f"SSH connection failed: {e}",
                original_error=e,
                unreachable=True
            )

    async def _disconnect_ssh(self, conn: Optional['asyncssh.SSHClientConnection']) -> None:
        if conn is not None:
            conn.close()
            await conn.wait_closed()


class SSHCommandTransport(SSHConnectionMixin, BaseTransport):
    """
    Runs one command per operation on a persistent SSH connection.

    The RawResult keeps stdout, stderr and the exit code separate;
    ``output`` mirrors stdout.

    Usage:
        config = SSHConfig(host="10.0.0.1", username="admin",
                           password=SecretStr("secret"), kind=TransportKind.COMMAND)
        async with SSHCommandTransport(config) as transport:
            result = await transport.send(Operation(target="uptime"))
    """

    kind = TransportKind.COMMAND

    def __init__(self, config: SSHConfig):
        super().__init__(config)
        self.config: SSHConfig = config
        self._conn: Optional['asyncssh.SSHClientConnection'] = None

    async def _open(self) -> None:
        self._conn = await self._connect_ssh()
        self.logger.info(f"SSH connection established to {self.config.host}")

    async def _close(self) -> None:
        conn, self._conn = self._conn, None
        await self._disconnect_ssh(conn)

    def _is_open(self) -> bool:
        return self._conn is not None and not self._conn.is_closed()

    async def _send(self, operation: Operation) -> RawResult:
        stdin = "\n".join(operation.input_lines) + "\n" if operation.input_lines else None

        self.logger.debug(f"SSH executing: {operation.target[:100]}")

        try:
            completed = await asyncio.wait_for(
                self._conn.run(
                    operation.target,
                    input=stdin.encode() if stdin else None,
                    check=False,
                    encoding=None,
                ),
                timeout=operation.timeout
            )
        except asyncio.TimeoutError as e:
            raise self._error(
                f"SSH command timed out after {operation.timeout}s",
                original_error=e,
                timed_out=True
            )
        except asyncssh.ChannelOpenError as e:
            raise self._error(f"SSH channel error: {e}", original_error=e, unreachable=True)
        except (asyncssh.Error, OSError) as e:
            raise self._error(f"SSH execution failed: {e}", original_error=e)

        stdout = decode_output(completed.stdout or b"")
        stderr = decode_output(completed.stderr or b"")
        exit_code = completed.exit_status if completed.exit_status is not None else completed.returncode

        return self._result(
            operation,
            output=stdout,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
        )
