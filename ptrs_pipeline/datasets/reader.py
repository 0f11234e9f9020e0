from __future__ import annotations

import hashlib
import io
import zipfile
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, TypeVar

import pandas as pd

from ..errors import DatasetParseError, DatasetReadTimeout

"""Tabular file reader (CSV / XLSX) built on pandas.

The first row is the header row, every following non-blank row is a data
row. CSV cells are read as strings so that staging sees exactly what the file
contains; XLSX cells keep the types openpyxl gives them (numbers, datetimes).
Blank cells and configured null sentinels become ``None``.

Reads run on a worker thread with a bounded timeout: a slow or stuck read
surfaces as ``DatasetReadTimeout`` (retryable) instead of hanging the step.
"""

__all__ = [
    "TableData",
    "DEFAULT_NULL_SENTINELS",
    "read_table",
    "read_table_bytes",
    "read_delimited",
    "sample_rows",
    "content_hash",
    "run_with_timeout",
    "PARSE_ERRORS",
]

T = TypeVar("T")

DEFAULT_NULL_SENTINELS = frozenset({"NULL", "#N/A"})
_EXCEL_SUFFIXES = {".xlsx", ".xlsm", ".xls"}


@dataclass
class TableData:
    file_name: str
    columns: list[str]
    rows: list[dict[str, Any]]  # 列名→値 (空セルは None)
    content_hash: str  # sha256 hex


PARSE_ERRORS = (
    pd.errors.ParserError,
    pd.errors.EmptyDataError,
    UnicodeDecodeError,
    zipfile.BadZipFile,
    ValueError,
    KeyError,
)


def run_with_timeout(fn: Callable[[], T], timeout: float | None, what: str) -> T:
    """Run ``fn`` on a worker thread and wait at most ``timeout`` seconds.

    Raises:
        DatasetReadTimeout: ``fn`` did not finish in time (the worker is abandoned)
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dataset-read")
    try:
        future = pool.submit(fn)
        return future.result(timeout=timeout)
    except FutureTimeout as e:
        raise DatasetReadTimeout(f"{what} exceeded {timeout}s") from e
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def detect_delimiter(first_line: str) -> str:
    """Pick comma, tab or semicolon by frequency in the header line (comma on ties)."""
    counts = {d: first_line.count(d) for d in (",", "\t", ";")}
    best = max(counts, key=lambda d: counts[d])
    return best if counts[best] > 0 else ","


def read_delimited(data: bytes) -> pd.DataFrame:
    """Read delimited text with every cell as str."""
    text = data.decode("utf-8-sig")
    first_line = text.split("\n", 1)[0]
    return pd.read_csv(io.StringIO(text), sep=detect_delimiter(first_line), dtype=str, keep_default_na=False)


def _frame(data: bytes, file_name: str, sheet: str | int | None) -> pd.DataFrame:
    suffix = Path(file_name).suffix.lower()
    if suffix in _EXCEL_SUFFIXES:
        return pd.read_excel(io.BytesIO(data), sheet_name=sheet or 0, keep_default_na=False)
    return read_delimited(data)


def _normalize_frame(df: pd.DataFrame, null_sentinels: frozenset[str]) -> tuple[list[str], list[dict[str, Any]]]:
    columns = [str(c).strip() for c in df.columns]
    rows: list[dict[str, Any]] = []
    for raw in df.itertuples(index=False, name=None):
        row: dict[str, Any] = {}
        for col, val in zip(columns, raw, strict=False):
            if val is None or (not isinstance(val, str) and pd.isna(val)):
                row[col] = None
                continue
            if isinstance(val, str):
                stripped = val.strip()
                if stripped == "" or stripped.upper() in null_sentinels:
                    row[col] = None
                    continue
                val = stripped
            elif isinstance(val, pd.Timestamp):
                val = val.to_pydatetime()
            row[col] = val
        # 全列空の行はスキップ
        if all(v is None for v in row.values()):
            continue
        rows.append(row)
    return columns, rows


def read_table_bytes(
    data: bytes,
    file_name: str,
    *,
    sheet: str | int | None = None,
    null_sentinels: frozenset[str] = DEFAULT_NULL_SENTINELS,
    timeout: float | None = 60.0,
) -> TableData:
    """Parse an uploaded file's bytes.

    Raises:
        DatasetParseError: the file cannot be parsed as a table at all
        DatasetReadTimeout: parsing did not finish within ``timeout`` seconds
    """
    def _parse() -> tuple[list[str], list[dict[str, Any]]]:
        df = _frame(data, file_name, sheet)
        return _normalize_frame(df, null_sentinels)

    try:
        columns, rows = run_with_timeout(_parse, timeout, f"reading {file_name}")
    except PARSE_ERRORS as e:
        raise DatasetParseError(f"failed to parse {file_name}: {e}") from e

    if not columns or all(c.startswith("Unnamed:") for c in columns):
        raise DatasetParseError(f"failed to parse {file_name}: no header row")
    return TableData(file_name=file_name, columns=columns, rows=rows, content_hash=content_hash(data))


def read_table(path: Path, **kwargs: Any) -> TableData:
    """Read a CSV / XLSX file from disk (see ``read_table_bytes``)."""
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise DatasetParseError(f"cannot read {path}: {e}") from e
    return read_table_bytes(data, Path(path).name, **kwargs)


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def sample_rows(rows: list[dict[str, Any]], limit: int = 5) -> list[dict[str, Any]]:
    """First ``limit`` rows with JSON-safe values (stored in dataset metadata)."""
    return [{k: _json_safe(v) for k, v in r.items()} for r in rows[:limit]]
