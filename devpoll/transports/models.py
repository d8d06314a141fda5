# ═══════════════════════════════════════════════════════════════
# DevPoll - Transport Models
# Data models shared by transports, sessions and the executor
# ═══════════════════════════════════════════════════════════════

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from ..core.config import get_settings
from ..core.exceptions import ErrorClassification


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════

class TransportKind(str, Enum):
    """The four transport families."""
    HTTP = "http"            # Request/response
    SHELL = "shell"          # Interactive shell (SSH)
    COMMAND = "command"      # Structured remote command (SSH exec, WinRM)
    TERMINAL = "terminal"    # Line-oriented terminal (telnet)


class AuthMode(str, Enum):
    """How a request/response transport attaches static credentials."""
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    HEADER = "header"        # API key in a custom header


class BackoffPolicy(str, Enum):
    """Delay policy between retry attempts."""
    NONE = "none"
    FIXED = "fixed"


class ShellType(str, Enum):
    """Remote shells accepted by the WinRM transport."""
    POWERSHELL = "powershell"
    CMD = "cmd"


# ═══════════════════════════════════════════════════════════════
# Connection Configuration Models
# ═══════════════════════════════════════════════════════════════

class BaseConnectionConfig(BaseModel):
    """Base configuration for all connection types."""
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )

    kind: TransportKind = TransportKind.HTTP

    host: str = Field(..., min_length=1, description="Target hostname or IP")
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    timeout: float = Field(default=30.0, gt=0, le=3600, description="Connection timeout in seconds")
    username: Optional[str] = Field(default=None, description="Device username")
    password: Optional[SecretStr] = Field(default=None, description="Device password")


class HttpConfig(BaseConnectionConfig):
    """Request/response (HTTP/HTTPS) configuration."""
    kind: TransportKind = TransportKind.HTTP

    protocol: str = Field(default="https", description="http or https")
    auth_mode: AuthMode = Field(default=AuthMode.NONE)
    token: Optional[SecretStr] = Field(default=None, description="Static bearer token or API key")
    auth_header: str = Field(default="Authorization", description="Header carrying the API key in HEADER mode")
    default_headers: Dict[str, str] = Field(default_factory=dict)

    cookie_jar: bool = Field(default=False, description="Keep cookies between requests")
    verify_tls: bool = Field(default_factory=lambda: get_settings().verify_tls)
    follow_redirects: bool = Field(default=True)

    @field_validator("protocol")
    @classmethod
    def _known_protocol(cls, value: str) -> str:
        value = value.lower()
        if value not in ("http", "https"):
            raise ValueError(f"Unsupported protocol: {value}")
        return value

    @property
    def base_url(self) -> str:
        """Get the device base URL."""
        port = self.port or (443 if self.protocol == "https" else 80)
        return f"{self.protocol}://{self.host}:{port}"


class SSHConfig(BaseConnectionConfig):
    """SSH configuration for interactive shells and structured commands."""
    kind: TransportKind = TransportKind.SHELL

    port: int = Field(default=22, ge=1, le=65535)
    username: str = Field(..., description="SSH username")
    private_key: Optional[str] = Field(default=None, description="Path to private key file")
    private_key_passphrase: Optional[SecretStr] = Field(default=None)

    known_hosts_file: Optional[str] = Field(default=None)
    host_key_checking: bool = Field(default=False)
    keepalive_interval: int = Field(default=30)

    # Interactive shell options
    term_type: str = Field(default="vt100")
    line_ending: str = Field(default="\n", description="Appended to input lines lacking one; empty for raw keys")
    prompt: Optional[str] = Field(default=None, description="Regex of the prompt shown once the shell is ready")


class WinRMConfig(BaseConnectionConfig):
    """WinRM configuration (structured remote command)."""
    kind: TransportKind = TransportKind.COMMAND

    port: int = Field(default=5985, ge=1, le=65535)  # 5985 for HTTP, 5986 for HTTPS
    username: str = Field(..., description="Windows username")
    domain: Optional[str] = Field(default=None)

    transport: str = Field(default="ntlm", description="ntlm, kerberos, basic")
    ssl: bool = Field(default=False)
    ssl_verify: bool = Field(default=False)
    shell: ShellType = Field(default=ShellType.POWERSHELL)

    @property
    def endpoint(self) -> str:
        """Get WinRM endpoint URL."""
        protocol = "https" if self.ssl else "http"
        return f"{protocol}://{self.host}:{self.port}/wsman"


class TerminalConfig(BaseConnectionConfig):
    """Line-oriented terminal (telnet) configuration."""
    kind: TransportKind = TransportKind.TERMINAL

    port: int = Field(default=23, ge=1, le=65535)
    login_template: str = Field(
        default="{username}\t{password}\r\n",
        description="Prefix sent before the navigation keystrokes",
    )
    negotiate: bool = Field(default=True, description="Refuse telnet option negotiation instead of passing IAC through")
    encoding: str = Field(default="utf-8")


ConnectionConfig = Union[HttpConfig, SSHConfig, WinRMConfig, TerminalConfig]


# ═══════════════════════════════════════════════════════════════
# Operation Models
# ═══════════════════════════════════════════════════════════════

class SuccessPredicate(BaseModel):
    """
    Decides whether a RawResult counts as a successful attempt.

    Status codes are checked only when the result carries one, exit codes
    likewise. ``status_codes=None`` accepts any 2xx status.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    status_codes: Optional[Set[int]] = None
    exit_codes: Set[int] = Field(default_factory=lambda: {0})
    output_pattern: Optional[str] = None
    check: Optional[Callable[[Any], bool]] = Field(default=None, exclude=True)

    @field_validator("output_pattern")
    @classmethod
    def _valid_pattern(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            re.compile(value)
        return value

    def evaluate(self, result: "RawResult") -> Tuple[bool, str]:
        """
        Evaluate the predicate.

        Returns:
            Tuple of (passed, reason). ``reason`` is empty on success.
        """
        if result.status_code is not None:
            if self.status_codes is None:
                if not 200 <= result.status_code < 300:
                    return False, f"unexpected status {result.status_code}"
            elif result.status_code not in self.status_codes:
                return False, f"unexpected status {result.status_code}"

        if result.exit_code is not None and result.exit_code not in self.exit_codes:
            return False, f"unexpected exit code {result.exit_code}"

        if self.output_pattern and not re.search(self.output_pattern, result.output):
            return False, f"output does not match {self.output_pattern!r}"

        if self.check is not None and not self.check(result):
            return False, "custom check failed"

        return True, ""


class Operation(BaseModel):
    """One request/command issued against a Session."""
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(default="", description="Name used in logs and outcomes")

    # Target
    target: str = Field(default="", description="URL path/absolute URL, or command string")
    method: str = Field(default="GET")
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Dict[str, Any] = Field(default_factory=dict)
    json_body: Optional[Any] = Field(default=None)
    form: Optional[Dict[str, str]] = Field(default=None)
    content: Optional[str] = Field(default=None)
    follow_redirects: Optional[bool] = Field(default=None)

    # Interactive input
    input_lines: List[str] = Field(default_factory=list)
    terminator: Optional[str] = Field(default=None, description="Regex marking the end of the output")
    resend_ceiling: int = Field(default=0, ge=0, le=100, description="Menu resend attempts, 0 disables")

    # Budget
    timeout: float = Field(default_factory=lambda: get_settings().default_timeout, gt=0, le=3600)
    retry_count: int = Field(default_factory=lambda: get_settings().default_retry_count, ge=0, le=10)
    backoff: BackoffPolicy = Field(default=BackoffPolicy.NONE)
    retry_delay: float = Field(default_factory=lambda: get_settings().default_retry_delay, ge=0, le=60)

    success: SuccessPredicate = Field(default_factory=SuccessPredicate)
    context: Dict[str, Any] = Field(default_factory=dict, description="Caller data carried to the outcome")

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()

    @field_validator("terminator")
    @classmethod
    def _valid_terminator(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            re.compile(value)
        return value

    @property
    def label(self) -> str:
        return self.name or self.target[:50] or str(self.id)


class RawResult(BaseModel):
    """Unprocessed transport output plus status metadata."""
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )

    operation_id: UUID
    operation_name: str = ""
    kind: TransportKind

    output: str = Field(default="", description="Primary output blob")
    stdout: str = Field(default="")
    stderr: str = Field(default="")
    blocks: List[str] = Field(default_factory=list, description="Output split per written line")

    status_code: Optional[int] = None
    exit_code: Optional[int] = None
    matched_terminator: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    cookies: Dict[str, str] = Field(default_factory=dict)
    url: Optional[str] = None

    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    elapsed_ms: int = 0
    attempts: int = 1

    @property
    def elapsed_seconds(self) -> float:
        return self.elapsed_ms / 1000.0


class OperationOutcome(BaseModel):
    """Result of one item of a fan-out batch: a RawResult or a classification."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    operation: Operation
    result: Optional[RawResult] = None
    classification: Optional[ErrorClassification] = None
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None and self.classification is None
