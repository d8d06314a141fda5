# ═══════════════════════════════════════════════════════════════
# DevPoll - Transport Factory
# Selects the transport class for a connection configuration
# ═══════════════════════════════════════════════════════════════

from typing import Any, Dict, Tuple, Type

from ..core.exceptions import ConfigurationError
from .base import BaseTransport
from .command import SSHCommandTransport
from .http import HttpTransport
from .models import (
    BaseConnectionConfig,
    HttpConfig,
    SSHConfig,
    TerminalConfig,
    TransportKind,
    WinRMConfig,
)
from .shell import ShellTransport
from .terminal import TerminalTransport
from .winrm import WinRMTransport


class TransportFactory:
    """
    Maps (config type, transport kind) to a transport class.

    The four transport families are fixed; the registry only exists so
    tests and drivers can look classes up without importing each module.

    Usage:
        transport = TransportFactory.create(SSHConfig(host="10.0.0.1", username="admin"))
    """

    _transport_classes: Dict[Tuple[Type[BaseConnectionConfig], TransportKind], Type[BaseTransport]] = {
        (HttpConfig, TransportKind.HTTP): HttpTransport,
        (SSHConfig, TransportKind.SHELL): ShellTransport,
        (SSHConfig, TransportKind.COMMAND): SSHCommandTransport,
        (WinRMConfig, TransportKind.COMMAND): WinRMTransport,
        (TerminalConfig, TransportKind.TERMINAL): TerminalTransport,
    }

    @classmethod
    def transport_class(cls, config: BaseConnectionConfig) -> Type[BaseTransport]:
        """
        Get the transport class for a configuration.

        Raises:
            ConfigurationError: If no transport serves this combination
        """
        for (config_type, kind), transport_class in cls._transport_classes.items():
            if isinstance(config, config_type) and config.kind == kind:
                return transport_class

        raise ConfigurationError(
            f"No transport for {type(config).__name__} with kind {config.kind.value}",
            details={"config_type": type(config).__name__, "kind": config.kind.value}
        )

    @classmethod
    def create(cls, config: BaseConnectionConfig, **kwargs: Any) -> BaseTransport:
        """Instantiate the transport for ``config``. Extra kwargs go to the constructor."""
        return cls.transport_class(config)(config, **kwargs)


def create_transport(config: BaseConnectionConfig, **kwargs: Any) -> BaseTransport:
    """Shortcut for ``TransportFactory.create``."""
    return TransportFactory.create(config, **kwargs)
