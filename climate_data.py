from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Iterable, List, Sequence, Tuple

import numpy as np

FIELD_SEPARATOR = ","
ERROR_LINE_MARKER = "error"
MONTH_FIELD = "month"
_INTEGER_PATTERN = re.compile(r"[+-]?\d+")
_REAL_PATTERN = re.compile(r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|NaN|Infinity)")


class ClimateClientError(RuntimeError):
    """Base class for climate client failures."""


class ConnectivityError(ClimateClientError):
    """Raised when the BioSIM server cannot be reached or answers with an unexpected status."""


class ServerError(ClimateClientError):
    """Raised when the BioSIM server reports a failure in its reply."""


class DecodeError(ClimateClientError):
    """Raised when a server reply cannot be decoded into the expected shape."""


class ValidationError(ClimateClientError, ValueError):
    """Raised when caller-supplied parameters are rejected before any network call."""


class AggregationError(ClimateClientError):
    """Raised when a month-indexed dataset cannot be reduced over the requested months."""


class RCP(Enum):
    RCP45 = "4_5"
    RCP85 = "8_5"

    @property
    def url_string(self) -> str:
        return self.value


class ClimateModel(Enum):
    Hadley = "Hadley"
    RCM4 = "RCM4"
    GCM4 = "GCM4"


class Period(Enum):
    FromNormals1951_1980 = "1951_1980"
    FromNormals1961_1990 = "1961_1990"
    FromNormals1971_2000 = "1971_2000"
    FromNormals1981_2010 = "1981_2010"
    FromNormals1991_2020 = "1991_2020"
    FromNormals2001_2030 = "2001_2030"
    FromNormals2011_2040 = "2011_2040"
    FromNormals2021_2050 = "2021_2050"
    FromNormals2031_2060 = "2031_2060"
    FromNormals2041_2070 = "2041_2070"
    FromNormals2051_2080 = "2051_2080"
    FromNormals2061_2090 = "2061_2090"
    FromNormals2071_2100 = "2071_2100"

    @property
    def query(self) -> str:
        return f"period={self.value}"

    @classmethod
    def from_label(cls, label: str) -> "Period":
        text = str(label).strip()
        for period in cls:
            if text in (period.name, period.value):
                return period
        raise ValidationError(f"Unknown normals period: {label}")


_MONTH_DAYS = (31, 28, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31)


class Month(IntEnum):
    January = 1
    February = 2
    March = 3
    April = 4
    May = 5
    June = 6
    July = 7
    August = 8
    September = 9
    October = 10
    November = 11
    December = 12

    @property
    def days(self) -> int:
        return _MONTH_DAYS[self.value - 1]


ALL_MONTHS: Tuple[Month, ...] = tuple(Month)


@dataclass(frozen=True)
class VariableMeta:
    code: str
    field_name: str
    additive: bool
    description: str


VARIABLES: Dict[str, VariableMeta] = {
    "TN": VariableMeta(code="TN", field_name="TMIN_MN", additive=False, description="min air temperature"),
    "TX": VariableMeta(code="TX", field_name="TMAX_MN", additive=False, description="max air temperature"),
    "P": VariableMeta(code="P", field_name="PRCP_TT", additive=True, description="precipitation"),
}

VARIABLE_FIELD_NAMES = frozenset(meta.field_name for meta in VARIABLES.values())


@dataclass(frozen=True)
class Location:
    latitude_deg: float
    longitude_deg: float
    elevation_m: float = math.nan

    def __str__(self) -> str:
        return f"{self.latitude_deg}_{self.longitude_deg}_{self.elevation_m}"


class FieldType(Enum):
    INTEGER = "integer"
    REAL = "real"
    TEXT = "text"


def _is_integer_token(token: str) -> bool:
    return bool(_INTEGER_PATTERN.fullmatch(token.strip()))


def _is_real_token(token: str) -> bool:
    return _REAL_PATTERN.fullmatch(token) is not None


def _format_value(value: object) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return repr(value)
    return str(value)


class Dataset:
    """Typed columnar table decoded from a BioSIM reply.

    Values are ingested as raw text tokens and typed once by
    ``index_field_types``. After that call the dataset is read-only.
    """

    def __init__(self, field_names: Iterable[str]) -> None:
        self._field_names: List[str] = []
        for name in field_names:
            self._add_field_name(str(name).strip())
        self._field_types: List[FieldType] = []
        self._records: List[List[object]] = []
        self._indexed = False

    def _add_field_name(self, name: str) -> None:
        candidate = name
        index = 0
        while candidate in self._field_names:
            candidate = f"{name}{index}"
            index += 1
        self._field_names.append(candidate)

    @property
    def field_names(self) -> List[str]:
        return list(self._field_names)

    @property
    def field_types(self) -> List[FieldType]:
        return list(self._field_types)

    @property
    def records(self) -> List[List[object]]:
        return [list(record) for record in self._records]

    @property
    def is_indexed(self) -> bool:
        return self._indexed

    def __len__(self) -> int:
        return len(self._records)

    def field_index(self, name: str, case_sensitive: bool = True) -> int:
        if case_sensitive:
            try:
                return self._field_names.index(name)
            except ValueError:
                return -1
        lowered = name.lower()
        for index, field_name in enumerate(self._field_names):
            if field_name.lower() == lowered:
                return index
        return -1

    def add_record(self, values: Sequence[object]) -> None:
        if self._indexed:
            raise RuntimeError("Cannot add records to a dataset whose field types are already indexed")
        if len(values) != len(self._field_names):
            raise DecodeError(
                f"Record has {len(values)} values but the dataset has {len(self._field_names)} fields: {list(values)}"
            )
        self._records.append([str(value).strip() for value in values])

    def index_field_types(self) -> None:
        if self._indexed:
            raise RuntimeError("Field types have already been indexed for this dataset")
        self._field_types = [self._infer_field_type(j) for j in range(len(self._field_names))]
        for j, field_type in enumerate(self._field_types):
            for record in self._records:
                record[j] = self._convert(record[j], field_type)
        self._indexed = True

    def _infer_field_type(self, j: int) -> FieldType:
        tokens = [record[j] for record in self._records]
        if all(_is_integer_token(token) for token in tokens):
            if self._field_names[j] in VARIABLE_FIELD_NAMES:
                return FieldType.REAL
            return FieldType.INTEGER
        if all(_is_real_token(token) for token in tokens):
            return FieldType.REAL
        return FieldType.TEXT

    @staticmethod
    def _convert(token: object, field_type: FieldType) -> object:
        if field_type == FieldType.INTEGER:
            return int(str(token))
        if field_type == FieldType.REAL:
            return float(str(token))
        return str(token)

    def value_at(self, i: int, j: int) -> object:
        return self._records[i][j]

    def column(self, name: str) -> np.ndarray:
        j = self.field_index(name)
        if j < 0:
            raise KeyError(f"Unknown field: {name}")
        values = [record[j] for record in self._records]
        if self._indexed and self._field_types[j] == FieldType.INTEGER:
            return np.asarray(values, dtype=np.int64)
        if self._indexed and self._field_types[j] == FieldType.REAL:
            return np.asarray(values, dtype=np.float64)
        return np.asarray(values, dtype=object)

    def remove_field(self, j: int) -> None:
        del self._field_names[j]
        if self._field_types:
            del self._field_types[j]
        for record in self._records:
            del record[j]

    def to_mapping(self) -> Dict[object, object]:
        """Nest records by their leading columns, the last column being the value.

        With fields ``Month,TMIN_MN`` the result is ``{1: -10.0, 2: -8.0}``;
        with three fields each leading value maps to an inner dict. Two records
        sharing the same key path raise ``DecodeError``.
        """
        if len(self._field_names) < 2:
            raise DecodeError(f"A mapping needs at least two fields, got {self._field_names}")
        mapping: Dict[object, object] = {}
        for record in self._records:
            level = mapping
            for key in record[:-2]:
                inner = level.setdefault(key, {})
                if not isinstance(inner, dict):
                    raise DecodeError(f"Key {key!r} is both a value and a nested level")
                level = inner
            key, value = record[-2], record[-1]
            if key in level:
                raise DecodeError(f"Duplicate key path in dataset: {record[:-1]}")
            level[key] = value
        return mapping

    def to_text(self, separator: str = FIELD_SEPARATOR) -> str:
        lines = [separator.join(self._field_names)]
        for record in self._records:
            lines.append(separator.join(_format_value(v) for v in record))
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Dataset(fields={self._field_names}, records={len(self._records)})"


def decode_tabular_reply(reply: str, header_marker: str, n_locations: int) -> List[Dataset]:
    """Split a multi-location BioSIM reply into one typed Dataset per location.

    Header lines start with ``header_marker`` and are matched to locations by
    position. Any line starting with ``error`` aborts the whole reply.
    """
    marker = header_marker.lower()
    datasets: List[Dataset] = []
    current: Dataset | None = None
    for raw_line in reply.split("\n"):
        line = raw_line.rstrip("\r")
        if not line.strip():
            continue
        lowered = line.lower()
        if lowered.startswith(ERROR_LINE_MARKER):
            raise ServerError(line)
        if lowered.startswith(marker):
            if len(datasets) >= n_locations:
                raise DecodeError(f"Reply holds more than the {n_locations} requested location blocks")
            current = Dataset(line.split(FIELD_SEPARATOR))
            datasets.append(current)
        elif current is None:
            raise DecodeError(f"Data line found before any '{header_marker}' header: {line}")
        else:
            current.add_record(line.split(FIELD_SEPARATOR))

    if len(datasets) != n_locations:
        raise DecodeError(f"Expected {n_locations} location blocks in reply, found {len(datasets)}")
    for dataset in datasets:
        dataset.index_field_types()
    return datasets


def _month_rows(dataset: Dataset) -> Dict[Month, int]:
    month_index = dataset.field_index(MONTH_FIELD, case_sensitive=False)
    if month_index < 0:
        raise AggregationError(f"Dataset has no '{MONTH_FIELD}' field: {dataset.field_names}")
    rows: Dict[Month, int] = {}
    for i in range(len(dataset)):
        raw = dataset.value_at(i, month_index)
        try:
            month = Month(int(raw))
        except (TypeError, ValueError) as exc:
            raise AggregationError(f"Invalid month value in dataset: {raw!r}") from exc
        if month in rows:
            raise AggregationError(f"Month {month.name} appears more than once in dataset")
        rows[month] = i
    return rows


def aggregate_months(
    dataset: Dataset,
    months: Sequence[Month | int],
    variables: Sequence[VariableMeta] | None = None,
) -> Dataset:
    """Reduce monthly records to one record over ``months``.

    Intensive variables are day-weighted means, additive variables are plain
    sums. Repeated months are counted as many times as they appear.
    """
    if not months:
        raise ValidationError("At least one month is required for aggregation")
    tracked = list(variables) if variables is not None else list(VARIABLES.values())
    rows = _month_rows(dataset)
    field_indices = [dataset.field_index(var.field_name) for var in tracked]

    values = np.zeros((len(months), len(tracked)), dtype=np.float64)
    days = np.zeros(len(months), dtype=np.float64)
    for m, requested in enumerate(months):
        try:
            month = Month(int(requested))
        except ValueError as exc:
            raise AggregationError(f"Invalid month: {requested!r}") from exc
        row = rows.get(month)
        if row is None:
            raise AggregationError(f"The month {month.name} is not in the dataset")
        for v, var in enumerate(tracked):
            j = field_indices[v]
            value = dataset.value_at(row, j) if j >= 0 else None
            if not isinstance(value, (int, float)):
                raise AggregationError(f"The variable {var.code} ({var.field_name}) has no value for {month.name}")
            values[m, v] = float(value)
        days[m] = month.days

    additive = np.array([var.additive for var in tracked], dtype=bool)
    weights = np.where(additive[np.newaxis, :], 1.0, days[:, np.newaxis])
    totals = (values * weights).sum(axis=0)
    totals = np.where(additive, totals, totals / days.sum())

    result = Dataset(var.field_name for var in tracked)
    result.add_record([repr(float(total)) for total in totals])
    result.index_field_types()
    return result
