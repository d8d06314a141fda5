# ═══════════════════════════════════════════════════════════════
# DevPoll - Transport Layer
# Channels to polled devices
# ═══════════════════════════════════════════════════════════════
#
# Components:
# - BaseTransport: open/send/close contract shared by every channel
# - HttpTransport: request/response over HTTP(S) (httpx)
# - ShellTransport: interactive shell over SSH (asyncssh)
# - SSHCommandTransport: structured remote command over SSH (asyncssh)
# - WinRMTransport: structured remote command over WinRM (pywinrm)
# - TerminalTransport: line-oriented telnet terminal (asyncio streams)
# - TransportFactory: picks the class for a connection config
#
# Transports never retry and never classify. They raise TransportError
# carrying the raw signal and leave the rest to the engine.
#
# ═══════════════════════════════════════════════════════════════

from .models import (
    TransportKind,
    AuthMode,
    BackoffPolicy,
    ShellType,
    BaseConnectionConfig,
    HttpConfig,
    SSHConfig,
    WinRMConfig,
    TerminalConfig,
    ConnectionConfig,
    SuccessPredicate,
    Operation,
    RawResult,
    OperationOutcome,
)
from .base import BaseTransport, strip_control_sequences, split_blocks, decode_output
from .http import HttpTransport
from .shell import ShellTransport
from .command import SSHCommandTransport
from .winrm import WinRMTransport
from .terminal import TerminalTransport, TelnetCodec
from .factory import TransportFactory, create_transport

__all__ = [
    # Models
    "TransportKind",
    "AuthMode",
    "BackoffPolicy",
    "ShellType",
    "BaseConnectionConfig",
    "HttpConfig",
    "SSHConfig",
    "WinRMConfig",
    "TerminalConfig",
    "ConnectionConfig",
    "SuccessPredicate",
    "Operation",
    "RawResult",
    "OperationOutcome",

    # Transports
    "BaseTransport",
    "HttpTransport",
    "ShellTransport",
    "SSHCommandTransport",
    "WinRMTransport",
    "TerminalTransport",
    "TelnetCodec",

    # Factory
    "TransportFactory",
    "create_transport",

    # Helpers
    "strip_control_sequences",
    "split_blocks",
    "decode_output",
]
