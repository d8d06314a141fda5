# ═══════════════════════════════════════════════════════════════
# DevPoll - Device Polling Engine
# Authenticated sessions, bounded execution and classified outcomes
# ═══════════════════════════════════════════════════════════════
#
# Usage Example:
# --------------
#   from devpoll import PollingCycle, DeviceParameters, CollectingSink
#   from devpoll.drivers import HttpMonitoringDriver
#
#   driver = HttpMonitoringDriver(probes=[
#       {"id": "title", "link": "/", "regex": r"<title>(.*)</title>"},
#   ])
#   sink = CollectingSink()
#   result = await PollingCycle(driver, DeviceParameters(host="10.0.0.1"), sink).poll()
#
# ═══════════════════════════════════════════════════════════════

from .core import (
    Settings,
    get_settings,
    DevPollError,
    TransportError,
    PayloadParseError,
    AuthenticationFailed,
    OperationFailed,
    SinkValidationError,
    DuplicateRecordError,
    configure_logging,
    get_logger,
)
from .engine import (
    ErrorClassification,
    classify,
    sanitize,
    DeviceParameters,
    StaticParameterProvider,
    EnvParameterProvider,
    DeviceDriver,
    CycleContext,
    CycleResult,
    PollingCycle,
)
from .sink import MonitoringSink, CollectingSink

__version__ = "1.0.0"

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "DevPollError",
    "TransportError",
    "PayloadParseError",
    "AuthenticationFailed",
    "OperationFailed",
    "SinkValidationError",
    "DuplicateRecordError",
    "configure_logging",
    "get_logger",
    "ErrorClassification",
    "classify",
    "sanitize",
    "DeviceParameters",
    "StaticParameterProvider",
    "EnvParameterProvider",
    "DeviceDriver",
    "CycleContext",
    "CycleResult",
    "PollingCycle",
    "MonitoringSink",
    "CollectingSink",
]
