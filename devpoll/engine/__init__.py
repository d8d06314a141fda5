# ═══════════════════════════════════════════════════════════════
# DevPoll - Engine
# Sessions, execution, normalization, reporting and classification
# ═══════════════════════════════════════════════════════════════
#
# Leaf to root:
#   transports -> SessionManager -> OperationExecutor
#              -> normalizers -> ResultReporter
# with classify() consulted at every transport and parse boundary.
# PollingCycle wires one device's run end to end.
#
# ═══════════════════════════════════════════════════════════════

from .classifier import ErrorClassification, FailureSignal, classify, classify_exception
from .session import (
    Session,
    AuthStrategy,
    StatelessAuth,
    TokenLogin,
    FormLogin,
    SessionManager,
)
from .executor import OperationExecutor
from .normalizer import (
    DEFAULT_SENTINEL,
    FieldType,
    FieldSpec,
    NormalizedRecord,
    BaseNormalizer,
    JsonNormalizer,
    MarkupNormalizer,
    DelimitedNormalizer,
    ColumnNormalizer,
    normalizer_for,
    resolve_path,
)
from .reporter import (
    sanitize,
    ValueType,
    CollisionPolicy,
    Reading,
    Column,
    TableRow,
    Table,
    ResultReporter,
)
from .cycle import (
    DeviceParameters,
    ParameterProvider,
    StaticParameterProvider,
    EnvParameterProvider,
    CycleContext,
    DeviceDriver,
    CycleResult,
    PollingCycle,
)

__all__ = [
    # Classification
    "ErrorClassification",
    "FailureSignal",
    "classify",
    "classify_exception",

    # Sessions
    "Session",
    "AuthStrategy",
    "StatelessAuth",
    "TokenLogin",
    "FormLogin",
    "SessionManager",

    # Execution
    "OperationExecutor",

    # Normalization
    "DEFAULT_SENTINEL",
    "FieldType",
    "FieldSpec",
    "NormalizedRecord",
    "BaseNormalizer",
    "JsonNormalizer",
    "MarkupNormalizer",
    "DelimitedNormalizer",
    "ColumnNormalizer",
    "normalizer_for",
    "resolve_path",

    # Reporting
    "sanitize",
    "ValueType",
    "CollisionPolicy",
    "Reading",
    "Column",
    "TableRow",
    "Table",
    "ResultReporter",

    # Cycle
    "DeviceParameters",
    "ParameterProvider",
    "StaticParameterProvider",
    "EnvParameterProvider",
    "CycleContext",
    "DeviceDriver",
    "CycleResult",
    "PollingCycle",
]
