"""Decode GTFS .txt tables into rows and string-typed DataFrames.

Rows whose field count does not match the header are dropped instead of
failing the whole table; upstream feeds are occasionally slightly malformed.
"""

import csv
import logging
import math
from typing import Any, Mapping, Optional, Union

import pandas as pd

logger = logging.getLogger("tripfinder.csv")

Row = Mapping[str, str]


def _clean(value: str) -> str:
    return value.replace('"', "").strip()


def _tokenize(line: str) -> Optional[list[str]]:
    # One line at a time, so an unbalanced quote cannot swallow the lines after it
    try:
        return next(csv.reader([line], skipinitialspace=True), [])
    except csv.Error:
        return None


def _split_records(text: str, name: str) -> tuple[list[str], list[list[str]]]:
    """Split CSV text into (header, well-formed records)."""
    lines = [line for line in text.lstrip("\ufeff").splitlines() if line.strip()]
    if not lines:
        return [], []

    header = [_clean(h) for h in (_tokenize(lines[0]) or [])]
    if not header:
        return [], []

    width = len(header)
    records: list[list[str]] = []
    dropped = 0
    for line in lines[1:]:
        fields = _tokenize(line)
        if fields is None or len(fields) != width:
            dropped += 1
            continue
        records.append([_clean(v) for v in fields])

    if dropped:
        logger.warning(f"{name}: dropped {dropped} malformed rows (expected {width} fields)")
    return header, records


def parse_table(text: str, name: str = "table") -> pd.DataFrame:
    """Parse CSV text into a DataFrame whose columns are all strings."""
    header, records = _split_records(text, name)
    if not header:
        return pd.DataFrame()
    return pd.DataFrame(records, columns=header, dtype=str)


def parse_rows(text: str, name: str = "table") -> list[dict[str, str]]:
    """Parse CSV text into a list of column -> value dicts."""
    header, records = _split_records(text, name)
    return [dict(zip(header, values)) for values in records]


def frame_rows(frame: pd.DataFrame) -> list[dict[str, str]]:
    if frame.empty:
        return []
    return frame.to_dict(orient="records")


# --- Row accessors ---

RowLike = Union[Row, pd.Series]


def get_str(row: RowLike, key: str, default: str = "") -> str:
    value: Any = row.get(key)
    if value is None:
        return default
    if isinstance(value, float) and math.isnan(value):
        return default
    value = str(value).strip()
    return value if value else default


def get_float(row: RowLike, key: str, default: float = math.nan) -> float:
    raw = get_str(row, key)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if math.isfinite(value) else default


def get_int(row: RowLike, key: str, default: int = 0) -> int:
    raw = get_str(row, key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        # "3.0" style values appear in some regional feeds
        value = get_float(row, key)
        return int(value) if not math.isnan(value) else default


def get_optional_int(row: RowLike, key: str) -> Optional[int]:
    raw = get_str(row, key)
    if not raw:
        return None
    value = get_float(row, key)
    return int(value) if not math.isnan(value) else None
