# ═══════════════════════════════════════════════════════════════
# DevPoll - Output Normalizer
# Turns raw device output into uniform records
# ═══════════════════════════════════════════════════════════════
#
# Contract: tolerant per record, strict per payload.
#  - A missing or unconvertible optional field gets its default
#    sentinel and is listed in NormalizedRecord.defaulted.
#  - A payload that cannot be read at all (invalid document, missing
#    records path, no records, missing required field) raises
#    PayloadParseError and yields no records.
#
# ═══════════════════════════════════════════════════════════════

import json
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union

from bs4 import BeautifulSoup
from pydantic import BaseModel, ConfigDict, Field

from ..core.exceptions import PayloadParseError
from ..core.logging import get_logger
from ..transports.base import split_blocks
from ..transports.models import RawResult

logger = get_logger("devpoll.engine.normalizer")

DEFAULT_SENTINEL = "N/A"


class FieldType(str, Enum):
    STRING = "STRING"
    NUMBER = "NUMBER"
    DATETIME = "DATETIME"


class FieldSpec(BaseModel):
    """
    Declares one output field.

    ``path`` is interpreted by the normalizer: a dotted JSON path, a CSS
    selector, a key of a key:value block, or a column/group name.
    """
    model_config = ConfigDict(populate_by_name=True)

    name: str
    path: Optional[str] = Field(default=None, description="Defaults to the field name")
    type: FieldType = FieldType.STRING
    required: bool = False
    default: Any = DEFAULT_SENTINEL

    # Markup only
    attribute: Optional[str] = Field(default=None, description="Read this attribute instead of the node text")
    index: int = Field(default=0, ge=0, description="Which of the selected nodes to read")

    datetime_format: Optional[str] = Field(default=None, description="strptime format for DATETIME fields")

    @property
    def source(self) -> str:
        return self.path or self.name


class NormalizedRecord(BaseModel):
    """Ordered field values of one record plus the fields that were defaulted."""
    values: Dict[str, Any] = Field(default_factory=dict)
    defaulted: List[str] = Field(default_factory=list)

    def __getitem__(self, name: str) -> Any:
        return self.values[name]

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    @property
    def complete(self) -> bool:
        return not self.defaulted


# ═══════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════

def resolve_path(data: Any, path: Optional[str]) -> Any:
    """
    Follow a dotted path through nested dicts and lists.

    Numeric segments index lists. Returns None when any segment is
    missing.

    >>> resolve_path({"a": [{"b": 1}]}, "a.0.b")
    1
    """
    if not path:
        return data

    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list) and segment.lstrip("-").isdigit():
            index = int(segment)
            if not -len(current) <= index < len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def convert_value(value: Any, field: FieldSpec) -> Any:
    """
    Convert a raw value to the field type.

    Raises:
        ValueError: If the value cannot be converted
    """
    if field.type == FieldType.NUMBER:
        if isinstance(value, bool):
            raise ValueError("boolean is not a number")
        if isinstance(value, (int, float)):
            return value
        text = str(value).strip().replace(",", "")
        try:
            return int(text)
        except ValueError:
            return float(text)

    if field.type == FieldType.DATETIME:
        if isinstance(value, datetime):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            # Epoch milliseconds vs seconds
            seconds = value / 1000 if value > 1e12 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        text = str(value).strip()
        if field.datetime_format:
            return datetime.strptime(text, field.datetime_format)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return datetime.fromisoformat(text)

    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value).strip()


# ═══════════════════════════════════════════════════════════════
# Normalizers
# ═══════════════════════════════════════════════════════════════

class BaseNormalizer(ABC):
    """
    Base class for the payload shapes.

    Subclasses implement ``_extract`` (split the payload into record
    items) and ``_field_value`` (read one raw field from an item, None if
    absent).
    """

    shape: str = "unknown"

    def __init__(self, fields: List[FieldSpec], allow_empty: bool = False):
        if not fields:
            raise ValueError("At least one field is required")
        self.fields = fields
        self.allow_empty = allow_empty

    def normalize(self, raw: Union[RawResult, str]) -> List[NormalizedRecord]:
        """
        Normalize a raw result into records.

        Raises:
            PayloadParseError: On any payload-level failure
        """
        text = raw.output if isinstance(raw, RawResult) else raw
        items = self._extract(text)

        if not items and not self.allow_empty:
            raise PayloadParseError("No records found in payload", shape=self.shape)

        records = [self._build(item, position) for position, item in enumerate(items)]

        defaulted = sum(1 for record in records if record.defaulted)
        if defaulted:
            logger.debug(
                f"{defaulted}/{len(records)} record(s) had defaulted fields",
                shape=self.shape
            )
        return records

    def _build(self, item: Any, position: int) -> NormalizedRecord:
        record = NormalizedRecord()

        for field in self.fields:
            value = self._field_value(item, field)
            if value is not None and not (isinstance(value, str) and not value.strip()):
                try:
                    record.values[field.name] = convert_value(value, field)
                    continue
                except (ValueError, TypeError, OverflowError):
                    value = None

            if field.required:
                raise PayloadParseError(
                    f"Required field '{field.name}' missing in record {position}",
                    shape=self.shape,
                    details={"field": field.name, "record": position}
                )
            record.values[field.name] = field.default
            record.defaulted.append(field.name)

        return record

    @abstractmethod
    def _extract(self, text: str) -> List[Any]:
        """Split the payload into record items."""

    @abstractmethod
    def _field_value(self, item: Any, field: FieldSpec) -> Any:
        """Read one raw field value from an item, or None."""


class JsonNormalizer(BaseNormalizer):
    """Records from a JSON document, optionally under a dotted records path."""

    shape = "json"

    def __init__(self, fields: List[FieldSpec], records_path: Optional[str] = None, allow_empty: bool = False):
        super().__init__(fields, allow_empty)
        self.records_path = records_path

    def _extract(self, text: str) -> List[Any]:
        try:
            document = json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            raise PayloadParseError(f"Invalid JSON: {e}", shape=self.shape, original_error=e)

        records = resolve_path(document, self.records_path)
        if records is None:
            raise PayloadParseError(
                f"Records path '{self.records_path}' not found",
                shape=self.shape,
                details={"records_path": self.records_path}
            )

        if isinstance(records, list):
            return records
        return [records]

    def _field_value(self, item: Any, field: FieldSpec) -> Any:
        return resolve_path(item, field.source)


class MarkupNormalizer(BaseNormalizer):
    """Records from HTML or XML, one per node matched by ``record_selector``."""

    shape = "markup"

    def __init__(
        self,
        fields: List[FieldSpec],
        record_selector: str,
        features: str = "html.parser",
        allow_empty: bool = False
    ):
        super().__init__(fields, allow_empty)
        self.record_selector = record_selector
        self.features = features

    def _extract(self, text: str) -> List[Any]:
        if not text or not text.strip():
            raise PayloadParseError("Empty markup document", shape=self.shape)

        soup = BeautifulSoup(text, self.features)
        return soup.select(self.record_selector)

    def _field_value(self, item: Any, field: FieldSpec) -> Any:
        if field.path:
            nodes = item.select(field.path)
        else:
            nodes = [item]

        if field.index >= len(nodes):
            return None

        node = nodes[field.index]
        if field.attribute:
            return node.get(field.attribute)
        return node.get_text(strip=True)


class DelimitedNormalizer(BaseNormalizer):
    """
    Records from key:value blocks.

    Blocks are separated by blank lines, or by lines matching
    ``separator`` when given.
    """

    shape = "delimited"

    def __init__(
        self,
        fields: List[FieldSpec],
        separator: Optional[str] = None,
        key_value_separator: str = ":",
        allow_empty: bool = False
    ):
        super().__init__(fields, allow_empty)
        self.separator = re.compile(separator, re.MULTILINE) if separator else None
        self.key_value_separator = key_value_separator

    def _extract(self, text: str) -> List[Any]:
        if self.separator is not None:
            sections = self.separator.split(text)
        else:
            sections = split_blocks(text)

        blocks = []
        for section in sections:
            pairs: Dict[str, str] = {}
            for line in section.splitlines():
                if self.key_value_separator not in line:
                    continue
                key, value = line.split(self.key_value_separator, 1)
                if key.strip():
                    pairs[key.strip()] = value.strip()
            if pairs:
                blocks.append(pairs)
        return blocks

    def _field_value(self, item: Any, field: FieldSpec) -> Any:
        return item.get(field.source)


class ColumnNormalizer(BaseNormalizer):
    """
    Records from line-oriented text.

    Each line is matched against ``row_pattern`` (named groups become
    fields) or split on whitespace into ``columns``. Lines that do not
    match are skipped. ``start_marker``/``end_marker`` bound the region
    that is scanned.
    """

    shape = "columns"

    def __init__(
        self,
        fields: List[FieldSpec],
        row_pattern: Optional[str] = None,
        columns: Optional[List[str]] = None,
        start_marker: Optional[str] = None,
        end_marker: Optional[str] = None,
        skip_lines: int = 0,
        allow_empty: bool = False
    ):
        super().__init__(fields, allow_empty)
        if bool(row_pattern) == bool(columns):
            raise ValueError("Exactly one of row_pattern or columns is required")
        self.row_pattern = re.compile(row_pattern) if row_pattern else None
        self.columns = columns or []
        self.start_marker = re.compile(start_marker) if start_marker else None
        self.end_marker = re.compile(end_marker) if end_marker else None
        self.skip_lines = skip_lines

    def _region(self, text: str) -> List[str]:
        lines = text.splitlines()

        if self.start_marker is not None:
            for position, line in enumerate(lines):
                if self.start_marker.search(line):
                    lines = lines[position + 1:]
                    break
            else:
                raise PayloadParseError(
                    f"Start marker {self.start_marker.pattern!r} not found",
                    shape=self.shape
                )

        if self.end_marker is not None:
            for position, line in enumerate(lines):
                if self.end_marker.search(line):
                    lines = lines[:position]
                    break

        return lines[self.skip_lines:]

    def _extract(self, text: str) -> List[Any]:
        rows = []
        for line in self._region(text):
            if not line.strip():
                continue
            if self.row_pattern is not None:
                match = self.row_pattern.search(line)
                if match:
                    rows.append(match.groupdict())
            else:
                parts = line.split(None, len(self.columns) - 1)
                rows.append(dict(zip(self.columns, parts)))
        return rows

    def _field_value(self, item: Any, field: FieldSpec) -> Any:
        return item.get(field.source)


# ═══════════════════════════════════════════════════════════════
# Selection
# ═══════════════════════════════════════════════════════════════

_NORMALIZERS: Dict[str, Type[BaseNormalizer]] = {
    "json": JsonNormalizer,
    "html": MarkupNormalizer,
    "xml": MarkupNormalizer,
    "delimited": DelimitedNormalizer,
    "columns": ColumnNormalizer,
}


def normalizer_for(shape: str, fields: List[FieldSpec], **options: Any) -> BaseNormalizer:
    """
    Build the normalizer for a payload shape.

    Shapes: ``json``, ``html``, ``xml``, ``delimited``, ``columns``.

    Raises:
        PayloadParseError: For an unknown shape
    """
    normalizer_class = _NORMALIZERS.get(shape.lower())
    if normalizer_class is None:
        raise PayloadParseError(
            f"Unsupported payload shape: {shape}",
            shape=shape,
            details={"supported": sorted(_NORMALIZERS)}
        )

    if shape.lower() == "xml":
        options.setdefault("features", "xml")
    return normalizer_class(fields, **options)
