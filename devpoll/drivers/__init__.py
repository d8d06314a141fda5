# ═══════════════════════════════════════════════════════════════
# DevPoll - Reference Drivers
# ═══════════════════════════════════════════════════════════════

from .http_monitoring import HttpMonitoringDriver, Probe, CssExtractor
from .command_table import CommandTableDriver

__all__ = [
    "HttpMonitoringDriver",
    "Probe",
    "CssExtractor",
    "CommandTableDriver",
]
