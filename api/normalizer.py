"""
Table model normalization for data frames sent by R.

R (via jsonlite) sends data frames column-oriented, with loosely typed
class tags and several spellings of missing values. This module is the
only place that interprets those conventions: it turns such a payload
into an immutable, row-oriented TableSnapshot with declared column
types and per-column NA flags.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import orjson

from .errors import MalformedPayload

CellValue = Union[str, int, float, bool, None]

# Spellings R uses for a missing value once serialized to JSON
NA_SENTINELS = ("NA",)


class ColumnType(str, Enum):
    """Declared R type of a column."""

    NUMERIC = "numeric"
    INTEGER = "integer"
    CHARACTER = "character"
    FACTOR = "factor"
    LOGICAL = "logical"
    DATE = "date"
    DATETIME = "datetime"
    DATETIME_ALT = "datetime-alt"
    COMPLEX = "complex"
    RAW = "raw"
    LIST = "list"
    UNKNOWN = "unknown"


# Ordered: the first substring found in a normalized tag wins.
_TYPE_TABLE: Tuple[Tuple[str, ColumnType], ...] = (
    ("numeric", ColumnType.NUMERIC),
    ("double", ColumnType.NUMERIC),
    ("integer", ColumnType.INTEGER),
    ("character", ColumnType.CHARACTER),
    ("factor", ColumnType.FACTOR),
    ("logical", ColumnType.LOGICAL),
    ("date", ColumnType.DATE),
    ("posixct", ColumnType.DATETIME),
    ("posixt", ColumnType.DATETIME),
    ("posixlt", ColumnType.DATETIME_ALT),
    ("complex", ColumnType.COMPLEX),
    ("raw", ColumnType.RAW),
    ("list", ColumnType.LIST),
)


@dataclass(frozen=True)
class ColumnDescriptor:
    """One column of a snapshot, in transfer order."""

    name: str
    declared_type: ColumnType
    ordinal_index: int
    has_missing: bool
    label: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.declared_type.value,
            "label": self.label,
            "index": self.ordinal_index,
            "hasNA": self.has_missing,
        }


@dataclass(frozen=True)
class TableSnapshot:
    """Immutable row-oriented table produced from one transfer."""

    name: str
    columns: Tuple[ColumnDescriptor, ...]
    rows: Tuple[Tuple[CellValue, ...], ...]
    total_row_count: int
    total_column_count: int
    captured_at_epoch_millis: int
    truncated: bool = False

    def __post_init__(self):
        width = len(self.columns)
        for i, row in enumerate(self.rows):
            if len(row) != width:
                raise ValueError(f"Row {i} has {len(row)} cells, expected {width}")
        if len(self.rows) > self.total_row_count:
            raise ValueError("Snapshot holds more rows than total_row_count")
        if self.truncated and len(self.rows) >= self.total_row_count:
            raise ValueError("Truncated snapshot must hold fewer rows than total_row_count")

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def to_dict(self) -> Dict[str, Any]:
        """Wire form consumed by the display surface."""
        return {
            "name": self.name,
            "columns": [c.to_dict() for c in self.columns],
            "rows": [list(r) for r in self.rows],
            "totalRows": self.total_row_count,
            "totalColumns": self.total_column_count,
            "truncated": self.truncated,
            "capturedAt": self.captured_at_epoch_millis,
        }


def map_r_type(tag: Any) -> ColumnType:
    """Map an R class tag to a ColumnType.

    Tags may be compound, e.g. ``c('POSIXct', 'POSIXt')`` or an
    un-collapsed class vector ``["POSIXct", "POSIXt"]``.
    """
    if tag is None:
        return ColumnType.UNKNOWN
    if isinstance(tag, (list, tuple)):
        tag = " ".join(str(t) for t in tag)
    normalized = str(tag).lower().replace("'", "").replace('"', "")

    for key, column_type in _TYPE_TABLE:
        if key in normalized:
            return column_type
    return ColumnType.UNKNOWN


def is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value in NA_SENTINELS)


def to_cell(value: Any) -> CellValue:
    """Convert one raw JSON value to a CellValue."""
    if is_missing(value):
        return None
    if isinstance(value, (str, bool, int, float)):
        return value
    # list-columns and nested records stay inside the CellValue union as text
    return orjson.dumps(value).decode("utf-8")


def normalize_payload(payload: Any, now_ms: Optional[int] = None) -> TableSnapshot:
    """Convert an R data frame payload into a TableSnapshot.

    Args:
        payload: Decoded JSON object with ``name``, ``data``, ``nrow``,
            ``ncol``, ``colnames``, ``coltypes`` and optional ``labels``.
        now_ms: Capture timestamp override (epoch milliseconds).

    Raises:
        MalformedPayload: If required fields are missing or inconsistent.
    """
    if not isinstance(payload, Mapping):
        raise MalformedPayload("Invalid data format: expected a JSON object")

    name = payload.get("name")
    data = payload.get("data")
    if not name or data is None:
        raise MalformedPayload("Invalid data format: missing name or data")
    if not isinstance(name, str):
        raise MalformedPayload("Invalid data format: name must be a string")
    if not isinstance(data, Mapping):
        raise MalformedPayload("Invalid data format: data must be an object of columns")

    nrow = _count(payload, "nrow")
    ncol = _count(payload, "ncol")

    colnames = payload.get("colnames")
    if isinstance(colnames, str):
        colnames = [colnames]
    if not isinstance(colnames, list) or not all(isinstance(c, str) for c in colnames):
        raise MalformedPayload("Invalid data format: colnames must be an array of strings")
    if len(colnames) != ncol:
        raise MalformedPayload(
            f"Invalid data format: {len(colnames)} colnames for ncol={ncol}"
        )

    coltypes = payload.get("coltypes") or []
    labels = payload.get("labels")
    if not isinstance(labels, Mapping):
        labels = {}

    column_values = [_column_values(data.get(col)) for col in colnames]

    columns = []
    for index, col in enumerate(colnames):
        label = labels.get(col)
        columns.append(
            ColumnDescriptor(
                name=col,
                declared_type=map_r_type(_type_tag(coltypes, col, index)),
                ordinal_index=index,
                has_missing=any(is_missing(v) for v in column_values[index]),
                label=label if isinstance(label, str) else None,
            )
        )

    rows = tuple(
        tuple(
            to_cell(values[i]) if i < len(values) else None
            for values in column_values
        )
        for i in range(nrow)
    )

    return TableSnapshot(
        name=name,
        columns=tuple(columns),
        rows=rows,
        total_row_count=nrow,
        total_column_count=ncol,
        captured_at_epoch_millis=now_ms if now_ms is not None else int(time.time() * 1000),
        truncated=False,
    )


def _count(payload: Mapping, key: str) -> int:
    value = payload.get(key)
    # jsonlite may box scalars into length-1 arrays
    if isinstance(value, list) and len(value) == 1:
        value = value[0]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedPayload(f"Invalid data format: {key} must be a non-negative integer")
    if value < 0 or int(value) != value:
        raise MalformedPayload(f"Invalid data format: {key} must be a non-negative integer")
    return int(value)


def _column_values(raw: Any) -> Sequence[Any]:
    if raw is None:
        return ()
    if isinstance(raw, list):
        return raw
    # auto-unboxed length-1 vector
    return (raw,)


def _type_tag(coltypes: Any, col: str, index: int) -> Any:
    if isinstance(coltypes, Mapping):
        return coltypes.get(col, "unknown")
    if isinstance(coltypes, list):
        return coltypes[index] if index < len(coltypes) else "unknown"
    if isinstance(coltypes, str) and index == 0:
        return coltypes
    return "unknown"
