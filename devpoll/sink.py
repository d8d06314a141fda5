# ═══════════════════════════════════════════════════════════════
# DevPoll - Monitoring Sink
# Where a cycle's outcome is published
# ═══════════════════════════════════════════════════════════════

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .core.logging import get_logger
from .engine.classifier import ErrorClassification
from .engine.reporter import Reading

logger = get_logger("devpoll.sink")


@runtime_checkable
class MonitoringSink(Protocol):
    """Receives exactly one call per cycle: success or failure."""

    def success(self, readings: List[Reading], tables: List[Dict[str, Any]]) -> None:
        ...

    def failure(self, classification: ErrorClassification, message: str) -> None:
        ...


class CollectingSink:
    """In-memory sink, used by the CLI and tests."""

    def __init__(self):
        self.readings: List[Reading] = []
        self.tables: List[Dict[str, Any]] = []
        self.classification: Optional[ErrorClassification] = None
        self.message: Optional[str] = None
        self.calls = 0

    def success(self, readings: List[Reading], tables: List[Dict[str, Any]]) -> None:
        self.calls += 1
        self.readings = list(readings)
        self.tables = list(tables)
        logger.debug(f"Published {len(readings)} reading(s) and {len(tables)} table(s)")

    def failure(self, classification: ErrorClassification, message: str) -> None:
        self.calls += 1
        self.classification = classification
        self.message = message
        logger.debug(f"Published failure {classification.value}")

    @property
    def succeeded(self) -> bool:
        return self.calls > 0 and self.classification is None
