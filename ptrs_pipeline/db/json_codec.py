from __future__ import annotations

import json
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from ..models.staged_row import RowAnnotations, RowError, StagedRow

"""Tagged JSON codec for JSONB columns.

Staged values are ``Decimal`` / ``date`` objects. Plain JSON would turn them
into floats and strings, so they are written as single-key tagged objects
(``{"$decimal": "12.30"}``, ``{"$date": "2024-07-01"}``) and restored on read.
"""

__all__ = [
    "dumps",
    "loads",
    "row_to_document",
    "row_from_document",
]

_DECIMAL = "$decimal"
_DATE = "$date"
_DATETIME = "$datetime"


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return {_DECIMAL: str(value)}
    if isinstance(value, datetime):
        return {_DATETIME: value.isoformat()}
    if isinstance(value, date):
        return {_DATE: value.isoformat()}
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def _decode_hook(obj: dict[str, Any]) -> Any:
    if len(obj) == 1:
        if _DECIMAL in obj:
            return Decimal(obj[_DECIMAL])
        if _DATE in obj:
            return date.fromisoformat(obj[_DATE])
        if _DATETIME in obj:
            return datetime.fromisoformat(obj[_DATETIME])
    return obj


def dumps(value: Any) -> str:
    return json.dumps(_encode(value), ensure_ascii=False, sort_keys=True)


def loads(raw: str | bytes | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw, object_hook=_decode_hook)


def row_to_document(row: StagedRow) -> dict[str, Any]:
    """Column values for one ``staged_row`` record (JSON columns already encoded)."""
    return {
        "tenant_id": row.tenant_id,
        "run_id": row.run_id,
        "row_no": row.row_no,
        "standard": dumps(row.standard),
        "custom": dumps(row.custom),
        "raw_ref": row.raw_ref,
        "errors": dumps([asdict(e) for e in row.errors]),
        "missing_fields": dumps(list(row.missing_fields)),
        "annotations": dumps(row.annotations.to_dict()),
    }


def _maybe_loads(raw: Any) -> Any:
    # psycopg2 は jsonb を dict/list で返す。文字列の場合のみ decode
    if isinstance(raw, (str, bytes)):
        return loads(raw)
    if raw is None:
        return None
    return loads(json.dumps(raw))


def row_from_document(doc: dict[str, Any]) -> StagedRow:
    return StagedRow(
        tenant_id=doc["tenant_id"],
        run_id=doc["run_id"],
        row_no=int(doc["row_no"]),
        standard=_maybe_loads(doc["standard"]) or {},
        custom=_maybe_loads(doc["custom"]) or {},
        raw_ref=doc.get("raw_ref"),
        errors=[RowError(**e) for e in _maybe_loads(doc.get("errors")) or []],
        missing_fields=list(_maybe_loads(doc.get("missing_fields")) or []),
        annotations=RowAnnotations.from_dict(_maybe_loads(doc.get("annotations"))),
    )
