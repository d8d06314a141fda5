# ═══════════════════════════════════════════════════════════════
# DevPoll - Structured Logging
# JSON/console output with per-cycle context tracking
# ═══════════════════════════════════════════════════════════════

import json
import logging
import sys
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .config import get_settings


# ═══════════════════════════════════════════════════════════════
# Cycle Context
# ═══════════════════════════════════════════════════════════════

# Every record logged inside a cycle carries these
_CONTEXT_VARS: Dict[str, ContextVar] = {
    name: ContextVar(name, default=None) for name in ("cycle_id", "device", "operation")
}


def get_context() -> Dict[str, Optional[str]]:
    """Current cycle, device and operation."""
    return {name: var.get() for name, var in _CONTEXT_VARS.items()}


@contextmanager
def logging_context(**values: Optional[str]):
    """
    Attach cycle context to every record logged inside the block.

    Only ``cycle_id``, ``device`` and ``operation`` are tracked; ``None``
    values leave the outer value in place.

    Usage:
        with logging_context(cycle_id="abc123", device="10.0.0.1"):
            logger.info("Polling")
    """
    tokens = [
        _CONTEXT_VARS[name].set(value)
        for name, value in values.items()
        if value is not None
    ]
    try:
        yield
    finally:
        for token in reversed(tokens):
            token.var.reset(token)


# ═══════════════════════════════════════════════════════════════
# Formatters
# ═══════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    def __init__(self, include_traceback: bool = True):
        super().__init__()
        self.include_traceback = include_traceback

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update({key: value for key, value in get_context().items() if value is not None})
        entry.update(getattr(record, 'extra_fields', None) or {})

        if record.exc_info:
            error_type, error, tb = record.exc_info
            entry['exception'] = {
                'type': error_type.__name__ if error_type else None,
                'message': str(error) if error else None,
            }
            if self.include_traceback:
                entry['exception']['traceback'] = traceback.format_exception(error_type, error, tb)

        return json.dumps(entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output for interactive runs."""

    LEVEL_COLORS = {
        logging.DEBUG: '\033[2m',
        logging.INFO: '\033[32m',
        logging.WARNING: '\033[33m',
        logging.ERROR: '\033[31m',
        logging.CRITICAL: '\033[1;31m',
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, '')
        stamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        line = f"{color}{stamp} {record.levelname[:4]} {record.name}: {record.getMessage()}{self.RESET}"

        fields = {key: value for key, value in get_context().items() if value}
        fields.update(getattr(record, 'extra_fields', None) or {})
        if fields:
            line += "  " + " ".join(f"{key}={value}" for key, value in fields.items())

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ═══════════════════════════════════════════════════════════════
# Logger
# ═══════════════════════════════════════════════════════════════

class DevPollLogger(logging.Logger):
    """Logger accepting ``extra_fields`` (or bare keyword fields) on every call."""

    def _log(
        self,
        level: int,
        msg: object,
        args,
        exc_info=None,
        extra=None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields
    ) -> None:
        extra = dict(extra or {})
        merged = dict(fields.pop('extra_fields', None) or {}, **fields)
        if merged:
            extra['extra_fields'] = merged

        super()._log(
            level, msg, args, exc_info=exc_info, extra=extra,
            stack_info=stack_info, stacklevel=stacklevel + 1
        )


logging.setLoggerClass(DevPollLogger)

# Third-party loggers kept at WARNING or above
NOISY_LOGGERS = ('asyncio', 'asyncssh', 'httpx', 'httpcore', 'urllib3', 'winrm')

_configured = False


def configure_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None
) -> None:
    """
    Install DevPoll handlers on the root logger (once per process).

    Only entry points (the CLI) call this; importing the library never
    touches the root logger. Arguments override Settings.
    """
    global _configured

    if _configured:
        return

    settings = get_settings()
    level = logging.getLevelName((log_level or settings.log_level).upper())
    console_format = JSONFormatter() if (log_format or settings.log_format) == 'json' else ConsoleFormatter()

    # stderr keeps stdout free for CLI result output
    handlers = [(logging.StreamHandler(sys.stderr), console_format)]
    if log_file or settings.log_file:
        handlers.append((logging.FileHandler(log_file or settings.log_file, encoding='utf-8'), JSONFormatter()))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    for handler, formatter in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _configured = True


def get_logger(name: str) -> DevPollLogger:
    """Logger for a DevPoll component, e.g. ``devpoll.engine.executor``."""
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════
# Audit and Performance
# ═══════════════════════════════════════════════════════════════

class AuditLogger:
    """Records login attempts against polled devices. Never given secrets."""

    def __init__(self):
        self.logger = get_logger('devpoll.audit')

    def log_authentication(
        self,
        device: Optional[str],
        success: bool,
        method: str = "password",
        username: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        outcome = "accepted" if success else "rejected"
        self.logger.log(
            logging.INFO if success else logging.WARNING,
            f"Login {outcome} by {device or 'device'}",
            extra_fields={
                'audit_type': 'authentication',
                'device': device,
                'success': success,
                'method': method,
                'username': username,
                **(details or {})
            }
        )


audit_logger = AuditLogger()


class PerformanceLogger:
    """Times cycles and operations."""

    def __init__(self):
        self.logger = get_logger('devpoll.performance')

    @contextmanager
    def measure(
        self,
        operation: str,
        threshold_seconds: Optional[float] = None,
        extra: Optional[Dict[str, Any]] = None
    ):
        """
        Log how long the block took; WARNING when over ``threshold_seconds``.

        Usage:
            with performance_logger.measure("poll"):
                await cycle.poll()
        """
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - started
            slow = threshold_seconds is not None and elapsed > threshold_seconds
            self.logger.log(
                logging.WARNING if slow else logging.DEBUG,
                f"{operation} took {elapsed:.3f}s" + (" (slow)" if slow else ""),
                extra_fields={'operation': operation, 'elapsed_seconds': round(elapsed, 6), **(extra or {})}
            )


performance_logger = PerformanceLogger()
