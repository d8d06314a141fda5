# ═══════════════════════════════════════════════════════════════
# DevPoll - Result Reporter
# Readings, tables and identifier sanitizing for the monitoring sink
# ═══════════════════════════════════════════════════════════════

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from ..core.exceptions import DuplicateRecordError, SinkValidationError
from ..core.logging import get_logger

logger = get_logger("devpoll.engine.reporter")

# Sink limits
MAX_UID_LENGTH = 50
MAX_READING_LABEL_LENGTH = 100
MAX_READING_VALUE_LENGTH = 500
MAX_UNIT_LENGTH = 10

MAX_RECORD_ID_LENGTH = 50
MAX_TABLE_LABEL_LENGTH = 50
MAX_COLUMN_HEADER_LENGTH = 30
MAX_COLUMN_UNIT_LENGTH = 10
RESERVED_COLUMN_LABEL = "Id"

_RESERVED_TOKENS = re.compile(r"\?|\*|%|table|column|history")
_WHITESPACE = re.compile(r"\s+")
_RESERVED_UID = re.compile(r"(/|^)(table|column|history)(/|$)")


def sanitize(text: Any) -> str:
    """
    Turn arbitrary text into a sink-safe identifier.

    Lower-cases, removes the reserved tokens until none are left,
    collapses whitespace runs to ``-`` and truncates to 50 characters.
    ``sanitize(sanitize(x)) == sanitize(x)`` for every input.

    >>> sanitize("Disk Table C:")
    'disk-c:'
    """
    value = str(text).lower()

    previous = None
    while previous != value:
        previous = value
        value = _RESERVED_TOKENS.sub("", value)

    value = _WHITESPACE.sub("-", value.strip())
    return value[:MAX_RECORD_ID_LENGTH]


class ValueType(str, Enum):
    """Display hint for a reading."""
    STRING = "STRING"
    NUMBER = "NUMBER"
    DATETIME = "DATETIME"
    RATE = "RATE"
    MONOTONE_RATE = "MONOTONE_RATE"


class CollisionPolicy(str, Enum):
    """What to do when two records sanitize to the same id."""
    REJECT = "reject"
    DISAMBIGUATE = "disambiguate"


# ═══════════════════════════════════════════════════════════════
# Monitoring Records
# ═══════════════════════════════════════════════════════════════

class Reading(BaseModel):
    """A scalar monitoring value."""
    model_config = ConfigDict(frozen=True)

    uid: str
    label: str
    value: Optional[str] = None
    unit: Optional[str] = None
    value_type: Optional[ValueType] = None

    @classmethod
    def create(
        cls,
        uid: Union[str, int],
        label: str,
        value: Any,
        unit: Optional[str] = None,
        value_type: Optional[Union[ValueType, str]] = None
    ) -> "Reading":
        """
        Build a reading, enforcing the sink limits.

        Raises:
            SinkValidationError: Invalid uid or value type
        """
        uid = str(uid) if uid is not None else ""
        if not 1 <= len(uid) <= MAX_UID_LENGTH:
            raise SinkValidationError(f"Invalid reading uid: {uid!r}", details={"uid": uid})
        if _RESERVED_UID.search(uid):
            raise SinkValidationError(f"uid '{uid}' is a reserved word", details={"uid": uid})

        if value_type is not None:
            try:
                value_type = ValueType(value_type)
            except ValueError:
                raise SinkValidationError(
                    f"Invalid reading value type: {value_type}",
                    details={"uid": uid}
                )

        return cls(
            uid=uid,
            label=str(label)[:MAX_READING_LABEL_LENGTH],
            value=None if value is None else str(value)[:MAX_READING_VALUE_LENGTH],
            unit=unit[:MAX_UNIT_LENGTH] if unit else None,
            value_type=value_type,
        )


class Column(BaseModel):
    """A table column header."""
    model_config = ConfigDict(frozen=True)

    label: str
    unit: Optional[str] = None


class TableRow(BaseModel):
    """One table record; ``values`` excludes the id column."""
    model_config = ConfigDict(frozen=True)

    table_label: str
    record_id: str
    values: List[Any] = Field(default_factory=list)


class Table:
    """
    A monitoring table with a fixed column set.

    The ``Id`` column is implicit and always first in the rendered result.
    """

    def __init__(self, label: str, columns: Sequence[Union[Column, Dict[str, Any], str]]):
        if not isinstance(label, str) or not 1 <= len(label) <= MAX_TABLE_LABEL_LENGTH:
            raise SinkValidationError(f"Invalid table label: {label!r}")

        self.label = label
        self.columns = [self._column(column) for column in columns]
        self._rows: Dict[str, TableRow] = {}

    @staticmethod
    def _column(column: Union[Column, Dict[str, Any], str]) -> Column:
        if isinstance(column, str):
            column = Column(label=column)
        elif isinstance(column, dict):
            column = Column(**column)

        if not 1 <= len(column.label) <= MAX_COLUMN_HEADER_LENGTH:
            raise SinkValidationError(
                f"Column header label must be a string with max length: {MAX_COLUMN_HEADER_LENGTH}",
                details={"label": column.label}
            )
        if column.label == RESERVED_COLUMN_LABEL:
            raise SinkValidationError(f"Column header label {RESERVED_COLUMN_LABEL} is reserved")
        if column.unit is not None and not 1 <= len(column.unit) <= MAX_COLUMN_UNIT_LENGTH:
            raise SinkValidationError(
                f"Column header unit must be a string with max length: {MAX_COLUMN_UNIT_LENGTH}",
                details={"unit": column.unit}
            )
        return column

    def _validate(self, record_id: str, values: Sequence[Any]) -> None:
        if not isinstance(record_id, str) or not 1 <= len(record_id) <= MAX_RECORD_ID_LENGTH:
            raise SinkValidationError(
                f"Record id must be a string with max length: {MAX_RECORD_ID_LENGTH}",
                details={"table": self.label, "record_id": record_id}
            )
        if len(values) != len(self.columns):
            raise SinkValidationError(
                f"Column header size is different than inserted values size: "
                f"{len(self.columns)} != {len(values)}",
                details={"table": self.label, "record_id": record_id}
            )

    def insert_record(self, record_id: str, values: Sequence[Any]) -> TableRow:
        """
        Insert a new record.

        Raises:
            SinkValidationError: Invalid id or wrong number of values
            DuplicateRecordError: If the id is already present
        """
        self._validate(record_id, values)
        if record_id in self._rows:
            raise DuplicateRecordError(self.label, record_id)

        row = TableRow(table_label=self.label, record_id=record_id, values=list(values))
        self._rows[record_id] = row
        return row

    def upsert_record(self, record_id: str, values: Sequence[Any]) -> TableRow:
        """Insert a record, replacing an existing one with the same id."""
        self._validate(record_id, values)
        if record_id in self._rows:
            logger.warning(f"A record with id {record_id} exists, updating", table=self.label)

        row = TableRow(table_label=self.label, record_id=record_id, values=list(values))
        self._rows[record_id] = row
        return row

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def rows(self) -> List[TableRow]:
        return list(self._rows.values())

    def result(self) -> Dict[str, Any]:
        """Rendered table: label, headers (Id first) and rows (id first)."""
        return {
            "label": self.label,
            "columnHeaders": [{"label": RESERVED_COLUMN_LABEL}] + [
                column.model_dump(exclude_none=True) for column in self.columns
            ],
            "rows": [[row.record_id] + list(row.values) for row in self._rows.values()],
        }


# ═══════════════════════════════════════════════════════════════
# Reporter
# ═══════════════════════════════════════════════════════════════

class ResultReporter:
    """
    Collects readings and table rows for one cycle.

    Record ids go through ``sanitize``. When two records land on the
    same id, ``REJECT`` raises DuplicateRecordError and ``DISAMBIGUATE``
    appends ``-2``, ``-3``... while staying within the id length bound.
    """

    def __init__(self, collision_policy: CollisionPolicy = CollisionPolicy.REJECT):
        self.collision_policy = CollisionPolicy(collision_policy)
        self._readings: Dict[str, Reading] = {}
        self._tables: Dict[str, Table] = {}

    def reading(
        self,
        uid: Union[str, int],
        label: str,
        value: Any,
        unit: Optional[str] = None,
        value_type: Optional[Union[ValueType, str]] = None
    ) -> Reading:
        """
        Add a scalar reading.

        Raises:
            SinkValidationError: Invalid uid, or a uid already reported
        """
        reading = Reading.create(uid, label, value, unit, value_type)
        if reading.uid in self._readings:
            raise SinkValidationError(
                f"Duplicate reading uid: {reading.uid}",
                details={"uid": reading.uid}
            )
        self._readings[reading.uid] = reading
        return reading

    def table(self, label: str, columns: Sequence[Union[Column, Dict[str, Any], str]]) -> Table:
        """Create (or return the existing) table with this label."""
        if label in self._tables:
            return self._tables[label]
        table = Table(label, columns)
        self._tables[label] = table
        return table

    def add_row(self, table: Table, record_id: Any, values: Sequence[Any]) -> TableRow:
        """Sanitize the id, apply the collision policy and insert the row."""
        base_id = sanitize(record_id)
        candidate = base_id

        if candidate in table and self.collision_policy == CollisionPolicy.DISAMBIGUATE:
            candidate = self._disambiguate(table, base_id)
            logger.debug(f"Record id {base_id!r} taken, using {candidate!r}", table=table.label)

        return table.insert_record(candidate, values)

    @staticmethod
    def _disambiguate(table: Table, base_id: str) -> str:
        counter = 2
        while True:
            suffix = f"-{counter}"
            candidate = base_id[:MAX_RECORD_ID_LENGTH - len(suffix)] + suffix
            if candidate not in table:
                return candidate
            counter += 1

    @property
    def readings(self) -> List[Reading]:
        return list(self._readings.values())

    @property
    def tables(self) -> List[Table]:
        return list(self._tables.values())
