from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from ..errors import StepCancelled
from ..models.canonical import CANONICAL_FIELDS, REQUIRED_FOR_REPORT, ValueType
from ..models.column_map import BindingSource, ColumnKind, ResolvedMapping
from ..models.processing_result import BatchStatsAccumulator
from ..models.staged_row import RowError, StagedRow
from .values import coerce, is_blank

"""Staging engine.

Produces exactly one ``StagedRow`` per source row of the main dataset:

- canonical fields are coerced to their declared type (money → Decimal,
  date → date ...) into the ``standard`` bucket; every catalogue field is
  present, ``None`` when unavailable
- passthrough columns land in ``custom`` under their alias
- custom concat fields and join-hint lookups also land in ``custom``
- a value that fails coercion becomes ``None`` and a ``RowError`` with the raw
  value and target type is appended to the row
- unresolved and empty required fields are listed in ``missing_fields``

The transform is a pure function of (rows, mapping, auxiliary rows), so
re-staging the same inputs reproduces identical rows. Rows are processed in
batches, optionally on worker threads; cancellation is checked between
batches and the result is always re-sorted by row number.
"""

__all__ = [
    "JoinIndex",
    "StagingOutcome",
    "build_join_index",
    "compute_input_hash",
    "stage_row",
    "stage_rows",
]

logger = logging.getLogger(__name__)

# role -> 正規化キー -> 補助データセット行
JoinIndex = dict[str, dict[str, dict[str, Any]]]


@dataclass
class StagingOutcome:
    rows: list[StagedRow]
    error_rows: int = 0
    error_count: int = 0
    missing_rows: int = 0
    batch_stats: tuple[int, float, float] = (0, 0.0, 0.0)
    stats: dict[str, Any] = field(default_factory=dict)


def _join_key(value: Any) -> str | None:
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return " ".join(str(value).split()).casefold()


def build_join_index(mapping: ResolvedMapping, aux_rows: dict[str, Sequence[dict[str, Any]]]) -> JoinIndex:
    """Index auxiliary dataset rows by each join hint's ``other_column``.

    When several auxiliary rows share a key the first one wins.
    """
    index: JoinIndex = {}
    for hint in mapping.joins:
        rows = aux_rows.get(hint.role)
        if rows is None:
            logger.warning(f"join role {hint.role!r} has no dataset; join skipped")
            continue
        by_key: dict[str, dict[str, Any]] = {}
        for r in rows:
            k = _join_key(r.get(hint.other_column))
            if k is not None and k not in by_key:
                by_key[k] = r
        index[hint.role] = by_key
    return index


def compute_input_hash(main_ref: str | None, aux_refs: dict[str, str | None], mapping: ResolvedMapping) -> str:
    """sha256 over the dataset content hashes and the resolved mapping fingerprint."""
    payload = {
        "main": main_ref,
        "aux": sorted((role, ref or "") for role, ref in aux_refs.items()),
        "mapping": mapping.fingerprint,
    }
    raw = json.dumps(payload, sort_keys=True)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _raw_text(value: Any) -> str | None:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def stage_row(
    tenant_id: str,
    run_id: str,
    row_no: int,
    raw: dict[str, Any],
    mapping: ResolvedMapping,
    *,
    join_index: JoinIndex | None = None,
    raw_ref: str | None = None,
) -> StagedRow:
    """Transform one source row."""
    standard: dict[str, Any] = {name: None for name in CANONICAL_FIELDS}
    custom: dict[str, Any] = {}
    errors: list[RowError] = []

    for b in mapping.fields:
        if b.source is BindingSource.UNRESOLVED:
            continue
        value = raw.get(b.header) if b.source is BindingSource.COLUMN else b.default
        try:
            standard[b.field] = coerce(value, b.value_type, b.format)
        except ValueError as e:
            standard[b.field] = None
            errors.append(RowError(
                field=b.field,
                raw_value=_raw_text(value),
                target_type=b.value_type.value,
                code="VALUE_PARSE_ERROR",
                message=str(e),
            ))

    for col in mapping.columns:
        if col.kind is ColumnKind.PASSTHROUGH:
            value = raw.get(col.header)
            custom[col.target] = None if is_blank(value) else value

    for cf in mapping.custom_fields:
        parts: list[str] = []
        for seg in cf.segments:
            if seg.kind == "literal":
                parts.append(seg.value)
                continue
            v = raw.get(seg.value)
            if not is_blank(v):
                parts.append(str(coerce(v, ValueType.STRING)))
        text = "".join(parts).strip()
        custom[cf.key] = text or None

    if join_index:
        for hint in mapping.joins:
            by_key = join_index.get(hint.role)
            if by_key is None:
                continue
            other = by_key.get(_join_key(raw.get(hint.main_column)) or "")
            if other is None:
                continue
            for col, v in other.items():
                if col != hint.other_column:
                    custom[f"{hint.role}.{col}"] = v

    unresolved = set(mapping.unresolved_fields)
    missing = [
        name for name in CANONICAL_FIELDS
        if name in unresolved or (name in REQUIRED_FOR_REPORT and standard[name] is None)
    ]
    return StagedRow(
        tenant_id=tenant_id,
        run_id=run_id,
        row_no=row_no,
        standard=standard,
        custom=custom,
        raw_ref=raw_ref,
        errors=errors,
        missing_fields=missing,
    )


def stage_rows(
    tenant_id: str,
    run_id: str,
    rows: Sequence[dict[str, Any]],
    mapping: ResolvedMapping,
    *,
    dataset_id: str | None = None,
    aux_rows: dict[str, Sequence[dict[str, Any]]] | None = None,
    batch_size: int = 500,
    workers: int = 1,
    cancel_event: threading.Event | None = None,
    on_batch: Callable[[int], None] | None = None,
) -> StagingOutcome:
    """Stage every row of the main dataset.

    Args:
        rows: Main dataset rows (header → value), in file order; row numbers are 1-based
        mapping: Resolved mapping for the dataset headers
        dataset_id: Used to build each row's ``raw_ref`` (``<dataset_id>#<row_no>``)
        aux_rows: Auxiliary dataset rows keyed by role (for join hints)
        cancel_event: Checked between batches; when set, ``StepCancelled`` is raised
            and nothing is returned, so the caller's prior staged set stays intact
        on_batch: Called with the number of rows in each finished batch

    Returns:
        StagingOutcome with rows sorted by ``row_no``
    """
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    join_index = build_join_index(mapping, aux_rows or {}) if mapping.joins else None
    numbered = list(enumerate(rows, start=1))
    batches = [numbered[i:i + batch_size] for i in range(0, len(numbered), batch_size)]
    acc = BatchStatsAccumulator()

    def _run_batch(batch: list[tuple[int, dict[str, Any]]]) -> list[StagedRow]:
        started = time.perf_counter()
        out = [
            stage_row(
                tenant_id, run_id, row_no, raw, mapping,
                join_index=join_index,
                raw_ref=f"{dataset_id}#{row_no}" if dataset_id else None,
            )
            for row_no, raw in batch
        ]
        acc.add_batch_time(time.perf_counter() - started)
        return out

    def _check_cancel() -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise StepCancelled(f"staging cancelled for run {run_id}")

    staged: list[StagedRow] = []
    if workers > 1 and len(batches) > 1:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="staging") as pool:
            futures = [pool.submit(_run_batch, b) for b in batches]
            try:
                for fut in futures:
                    _check_cancel()
                    part = fut.result()
                    staged.extend(part)
                    if on_batch is not None:
                        on_batch(len(part))
            except StepCancelled:
                for fut in futures:
                    fut.cancel()
                raise
    else:
        for b in batches:
            _check_cancel()
            part = _run_batch(b)
            staged.extend(part)
            if on_batch is not None:
                on_batch(len(part))
    _check_cancel()

    staged.sort(key=lambda r: r.row_no)
    error_rows = sum(1 for r in staged if r.errors)
    outcome = StagingOutcome(
        rows=staged,
        error_rows=error_rows,
        error_count=sum(len(r.errors) for r in staged),
        missing_rows=sum(1 for r in staged if r.missing_fields),
        batch_stats=acc.get_stats(),
    )
    outcome.stats = {
        "rows": len(staged),
        "error_rows": outcome.error_rows,
        "error_count": outcome.error_count,
        "missing_rows": outcome.missing_rows,
        "unresolved_fields": list(mapping.unresolved_fields),
        "batches": outcome.batch_stats[0],
    }
    logger.debug(f"staged {len(staged)} rows for run {run_id} ({error_rows} with errors)")
    return outcome
