# ═══════════════════════════════════════════════════════════════
# DevPoll - WinRM Transport
# Structured remote command execution on Windows hosts
# ═══════════════════════════════════════════════════════════════

import asyncio
from typing import Optional, Tuple

import winrm
from winrm.exceptions import (
    InvalidCredentialsError,
    WinRMError,
    WinRMOperationTimeoutError,
    WinRMTransportError,
)

from .base import BaseTransport, decode_output
from .models import Operation, RawResult, ShellType, TransportKind, WinRMConfig

# Slack given to the worker thread on top of the WinRM operation timeout
NETWORK_LATENCY_BUFFER = 5


class WinRMTransport(BaseTransport):
    """
    Structured remote command transport over WinRM.

    pywinrm is synchronous, so every call runs in the default thread
    pool executor. The RawResult keeps stdout, stderr and the exit code
    separate.

    Usage:
        config = WinRMConfig(host="10.0.0.5", username="monitor",
                             password=SecretStr("secret"))
        async with WinRMTransport(config) as transport:
            result = await transport.send(Operation(target="Get-Service"))
    """

    kind = TransportKind.COMMAND

    def __init__(self, config: WinRMConfig):
        super().__init__(config)
        self.config: WinRMConfig = config
        self._session: Optional[winrm.Session] = None

    # ═══════════════════════════════════════════════════════════
    # Channel Management
    # ═══════════════════════════════════════════════════════════

    async def _open(self) -> None:
        # WinRM is stateless, connectivity and credentials are checked here
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_session)
        self.logger.info(f"WinRM connection established to {self.config.host}")

    def _create_session(self) -> None:
        """Create the pywinrm session and probe it (sync, runs in executor)."""
        username = self.config.username
        if self.config.domain:
            username = f"{self.config.domain}\\{username}"
        password = self.config.password.get_secret_value() if self.config.password else ""

        session = winrm.Session(
            target=self.config.endpoint,
            auth=(username, password),
            transport=self.config.transport.lower(),
            server_cert_validation='validate' if self.config.ssl_verify else 'ignore',
            read_timeout_sec=int(self.config.timeout) + NETWORK_LATENCY_BUFFER,
            operation_timeout_sec=int(self.config.timeout),
        )

        try:
            probe = session.run_cmd('echo connected')
        except InvalidCredentialsError as e:
            raise self._error(f"WinRM authentication failed: {e}", original_error=e, auth_rejected=True)
        except WinRMTransportError as e:
            raise self._error(
                f"WinRM transport error: {e}",
                original_error=e,
                status_code=getattr(e, 'code', None),
                auth_rejected=getattr(e, 'code', None) == 401
            )
        except WinRMError as e:
            raise self._error(f"WinRM error: {e}", original_error=e)
        except OSError as e:
            raise self._error(f"Cannot reach WinRM endpoint: {e}", original_error=e, unreachable=True)

        if probe.status_code != 0:
            raise self._error("WinRM test command failed", exit_code=probe.status_code)

        self._session = session

    async def _close(self) -> None:
        # No explicit disconnect for WinRM sessions
        self._session = None

    def _is_open(self) -> bool:
        return self._session is not None

    # ═══════════════════════════════════════════════════════════
    # Command Execution
    # ═══════════════════════════════════════════════════════════

    async def _send(self, operation: Operation) -> RawResult:
        self.logger.debug(f"WinRM executing ({self.config.shell.value}): {operation.target[:100]}")

        loop = asyncio.get_running_loop()
        try:
            exit_code, stdout, stderr = await asyncio.wait_for(
                loop.run_in_executor(None, self._run_command_sync, operation.target),
                timeout=operation.timeout
            )
        except (asyncio.TimeoutError, WinRMOperationTimeoutError) as e:
            raise self._error(
                f"WinRM command timed out after {operation.timeout}s",
                original_error=e,
                timed_out=True
            )
        except InvalidCredentialsError as e:
            raise self._error(f"WinRM authentication failed: {e}", original_error=e, auth_rejected=True)
        except WinRMTransportError as e:
            raise self._error(
                f"WinRM transport error: {e}",
                original_error=e,
                status_code=getattr(e, 'code', None)
            )
        except WinRMError as e:
            raise self._error(f"WinRM execution failed: {e}", original_error=e)
        except OSError as e:
            raise self._error(f"Cannot reach WinRM endpoint: {e}", original_error=e, unreachable=True)

        return self._result(
            operation,
            output=stdout,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
        )

    def _run_command_sync(self, command: str) -> Tuple[int, str, str]:
        """Execute command synchronously (runs in thread pool)."""
        if self.config.shell == ShellType.POWERSHELL:
            result = self._session.run_ps(command)
        else:
            result = self._session.run_cmd(command)

        stdout = decode_output(result.std_out).strip()
        stderr = decode_output(result.std_err).strip()

        return result.status_code, stdout, stderr
