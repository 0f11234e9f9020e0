from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict
from importlib import resources
from typing import Any

from psycopg2.extras import execute_values

from ..errors import NotFoundError, PipelineError
from ..models.classification import (
    BatchLifecycle,
    BatchStatus,
    ClassificationBatch,
    ClassificationResult,
    Verdict,
)
from ..models.column_map import ColumnMap, MapLifecycle
from ..models.dataset import Dataset, DatasetStatus
from ..models.processing_result import ExecutionStatus, StepExecution
from ..models.run import Run, RunStatus, Step
from ..models.staged_row import RowAnnotations, StagedRow
from ..tenancy import require_tenant
from . import json_codec
from .batch_insert import BatchInsertError, batch_insert

"""PostgreSQL implementation of the ``Store`` protocol.

Works on a psycopg2 cursor whose connection has ``autocommit = False``. Every
multi-statement write is wrapped in an explicit BEGIN / COMMIT, with ROLLBACK
on any failure so a step never leaves half-written rows behind.
"""

__all__ = [
    "StorageError",
    "PostgresStore",
    "load_schema_sql",
]

logger = logging.getLogger(__name__)

_RUN_COLS = "id, tenant_id, profile_id, status, current_step, meta, created_by, created_at, updated_at"
_DATASET_COLS = "id, tenant_id, run_id, role, file_name, storage_ref, row_count, status, meta, created_by, created_at"
_MAP_COLS = "id, tenant_id, run_id, profile_id, document, version, lifecycle, updated_by, updated_at"
_ROW_COLS = ("tenant_id", "run_id", "row_no", "standard", "custom", "raw_ref", "errors", "missing_fields",
             "annotations")
_ROW_JSONB = {"standard", "custom", "errors", "missing_fields", "annotations"}
_BATCH_COLS = ("id, tenant_id, run_id, file_name, file_hash, sequence, raw_row_count, parsed_count, status, "
               "lifecycle, summary, issues, created_by, created_at")
_RESULT_COLS = ("batch_id", "tenant_id", "identifier", "outcome", "verdict", "is_valid_abn", "year", "row_no")
_EXEC_COLS = ("id, tenant_id, run_id, step, input_hash, status, rows_in, rows_out, stats, error_message, "
              "started_at, finished_at, created_by")


class StorageError(PipelineError):
    code = "STORAGE_UNAVAILABLE"
    retryable = True


def load_schema_sql() -> str:
    """DDL shipped with the package (``db/schema.sql``)."""
    return resources.files("ptrs_pipeline.db").joinpath("schema.sql").read_text(encoding="utf-8")


def _json(raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(raw, (str, bytes)):
        return json_codec.loads(raw)
    return json_codec.loads(json_codec.dumps(raw))


class PostgresStore:
    """Store over one shared psycopg2 cursor.

    Runs may be processed concurrently while sharing the connection, so a
    store-level lock is held for the whole of each transaction (and each
    execute + fetch pair). Statements of two transactions never interleave
    on the connection, and one run's COMMIT cannot commit another run's
    half-written rows.
    """

    def __init__(self, cursor: Any, page_size: int = 1000) -> None:
        self.cursor = cursor
        self.page_size = page_size
        self._lock = threading.RLock()

    # ------------------------------------------------------------ helpers
    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        with self._lock:
            cur = self.cursor
            cur.execute("BEGIN")
            try:
                yield cur
            except Exception:
                try:
                    cur.execute("ROLLBACK")
                except Exception as rollback_error:  # 元の例外を優先して送出
                    logger.error(f"rollback failed: {rollback_error}")
                raise
            else:
                cur.execute("COMMIT")

    def ensure_schema(self) -> None:
        """Create the pipeline tables if they do not exist (idempotent DDL)."""
        with self._transaction() as cur:
            cur.execute(load_schema_sql())

    def _fetchone(self, sql: str, params: Sequence[Any]) -> tuple[Any, ...] | None:
        with self._lock:
            self.cursor.execute(sql, params)
            return self.cursor.fetchone()

    def _fetchall(self, sql: str, params: Sequence[Any]) -> list[tuple[Any, ...]]:
        with self._lock:
            self.cursor.execute(sql, params)
            return list(self.cursor.fetchall())

    # --------------------------------------------------------------- runs
    @staticmethod
    def _run(row: tuple[Any, ...]) -> Run:
        return Run(
            id=row[0], tenant_id=row[1], profile_id=row[2], status=RunStatus(row[3]),
            current_step=Step(row[4]) if row[4] else None, meta=_json(row[5]) or {},
            created_by=row[6], created_at=row[7], updated_at=row[8],
        )

    def insert_run(self, run: Run) -> None:
        require_tenant(run.tenant_id)
        with self._transaction() as cur:
            cur.execute(
                f"INSERT INTO ptrs_run ({_RUN_COLS}) VALUES (%s,%s,%s,%s,%s,%s::jsonb,%s,%s,%s)",
                (run.id, run.tenant_id, run.profile_id, run.status.value,
                 run.current_step.value if run.current_step else None, json_codec.dumps(run.meta),
                 run.created_by, run.created_at, run.updated_at),
            )

    def get_run(self, tenant_id: str, run_id: str) -> Run:
        require_tenant(tenant_id)
        row = self._fetchone(f"SELECT {_RUN_COLS} FROM ptrs_run WHERE tenant_id = %s AND id = %s",
                             (tenant_id, run_id))
        if row is None:
            raise NotFoundError(f"run {run_id} not found")
        return self._run(row)

    def update_run(self, run: Run) -> None:
        require_tenant(run.tenant_id)
        with self._transaction() as cur:
            cur.execute(
                "UPDATE ptrs_run SET profile_id = %s, status = %s, current_step = %s, meta = %s::jsonb, "
                "updated_at = %s WHERE tenant_id = %s AND id = %s",
                (run.profile_id, run.status.value, run.current_step.value if run.current_step else None,
                 json_codec.dumps(run.meta), run.updated_at, run.tenant_id, run.id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"run {run.id} not found")

    # ----------------------------------------------------------- datasets
    @staticmethod
    def _dataset(row: tuple[Any, ...]) -> Dataset:
        return Dataset(
            id=row[0], tenant_id=row[1], run_id=row[2], role=row[3], file_name=row[4], storage_ref=row[5],
            row_count=row[6], status=DatasetStatus(row[7]), meta=_json(row[8]) or {},
            created_by=row[9], created_at=row[10],
        )

    def insert_dataset(self, dataset: Dataset, rows: Sequence[dict[str, Any]] | None = None) -> None:
        self.get_run(dataset.tenant_id, dataset.run_id)
        try:
            with self._transaction() as cur:
                cur.execute(
                    f"INSERT INTO ptrs_dataset ({_DATASET_COLS}) VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s::jsonb,%s,%s)",
                    (dataset.id, dataset.tenant_id, dataset.run_id, dataset.role, dataset.file_name,
                     dataset.storage_ref, dataset.row_count, dataset.status.value, json_codec.dumps(dataset.meta),
                     dataset.created_by, dataset.created_at),
                )
                batch_insert(
                    cur, "ptrs_dataset_row", ("tenant_id", "dataset_id", "row_no", "data"),
                    ((dataset.tenant_id, dataset.id, i, json_codec.dumps(r)) for i, r in enumerate(rows or [], 1)),
                    page_size=self.page_size, jsonb_columns={"data"},
                )
        except BatchInsertError as e:
            raise StorageError(f"failed to store dataset rows: {e}") from e

    def get_dataset(self, tenant_id: str, dataset_id: str) -> Dataset:
        require_tenant(tenant_id)
        row = self._fetchone(f"SELECT {_DATASET_COLS} FROM ptrs_dataset WHERE tenant_id = %s AND id = %s",
                             (tenant_id, dataset_id))
        if row is None:
            raise NotFoundError(f"dataset {dataset_id} not found")
        return self._dataset(row)

    def list_datasets(self, tenant_id: str, run_id: str, role: str | None = None) -> list[Dataset]:
        require_tenant(tenant_id)
        sql = f"SELECT {_DATASET_COLS} FROM ptrs_dataset WHERE tenant_id = %s AND run_id = %s"
        params: list[Any] = [tenant_id, run_id]
        if role is not None:
            sql += " AND role = %s"
            params.append(role)
        return [self._dataset(r) for r in self._fetchall(sql + " ORDER BY created_at, id", params)]

    def get_dataset_rows(self, tenant_id: str, dataset_id: str) -> list[dict[str, Any]]:
        self.get_dataset(tenant_id, dataset_id)
        rows = self._fetchall(
            "SELECT data FROM ptrs_dataset_row WHERE tenant_id = %s AND dataset_id = %s ORDER BY row_no",
            (tenant_id, dataset_id),
        )
        return [_json(r[0]) for r in rows]

    # -------------------------------------------------------- column maps
    def get_column_map(self, tenant_id: str, run_id: str) -> ColumnMap | None:
        require_tenant(tenant_id)
        row = self._fetchone(
            f"SELECT {_MAP_COLS} FROM ptrs_column_map WHERE tenant_id = %s AND run_id = %s",
            (tenant_id, run_id),
        )
        if row is None:
            return None
        return ColumnMap(
            id=row[0], tenant_id=row[1], run_id=row[2], profile_id=row[3], document=_json(row[4]) or {},
            version=row[5], lifecycle=MapLifecycle(row[6]), updated_by=row[7], updated_at=row[8],
        )

    def save_column_map(self, column_map: ColumnMap) -> None:
        require_tenant(column_map.tenant_id)
        with self._transaction() as cur:
            cur.execute(
                f"INSERT INTO ptrs_column_map ({_MAP_COLS}) VALUES (%s,%s,%s,%s,%s::jsonb,%s,%s,%s,%s) "
                "ON CONFLICT (tenant_id, run_id) DO UPDATE SET profile_id = EXCLUDED.profile_id, "
                "document = EXCLUDED.document, version = EXCLUDED.version, lifecycle = EXCLUDED.lifecycle, "
                "updated_by = EXCLUDED.updated_by, updated_at = EXCLUDED.updated_at",
                (column_map.id, column_map.tenant_id, column_map.run_id, column_map.profile_id,
                 json_codec.dumps(column_map.document), column_map.version, column_map.lifecycle.value,
                 column_map.updated_by, column_map.updated_at),
            )

    # -------------------------------------------------------- staged rows
    def replace_staged_rows(self, tenant_id: str, run_id: str, rows: Sequence[StagedRow]) -> int:
        """DELETE + INSERT in one transaction (destructive replace)."""
        require_tenant(tenant_id)
        values = []
        for r in rows:
            if r.tenant_id != tenant_id or r.run_id != run_id:
                raise ValueError(f"row {r.row_no} does not belong to run {run_id}")
            doc = json_codec.row_to_document(r)
            values.append(tuple(doc[c] for c in _ROW_COLS))
        try:
            with self._transaction() as cur:
                cur.execute("DELETE FROM ptrs_staged_row WHERE tenant_id = %s AND run_id = %s", (tenant_id, run_id))
                result = batch_insert(cur, "ptrs_staged_row", _ROW_COLS, values, page_size=self.page_size,
                                      jsonb_columns=_ROW_JSONB)
        except BatchInsertError as e:
            raise StorageError(f"failed to write staged rows: {e}") from e
        return result.inserted_rows

    def list_staged_rows(self, tenant_id: str, run_id: str) -> list[StagedRow]:
        require_tenant(tenant_id)
        rows = self._fetchall(
            f"SELECT {', '.join(_ROW_COLS)} FROM ptrs_staged_row WHERE tenant_id = %s AND run_id = %s "
            "ORDER BY row_no",
            (tenant_id, run_id),
        )
        return [json_codec.row_from_document(dict(zip(_ROW_COLS, r))) for r in rows]

    def update_annotations(self, tenant_id: str, run_id: str, annotations: dict[int, RowAnnotations]) -> int:
        require_tenant(tenant_id)
        if not annotations:
            return 0
        values = [(tenant_id, run_id, row_no, json_codec.dumps(ann.to_dict()))
                  for row_no, ann in sorted(annotations.items())]
        with self._transaction() as cur:
            execute_values(
                cur,
                "UPDATE ptrs_staged_row AS s SET annotations = v.annotations::jsonb "
                "FROM (VALUES %s) AS v(tenant_id, run_id, row_no, annotations) "
                "WHERE s.tenant_id = v.tenant_id AND s.run_id = v.run_id AND s.row_no = v.row_no",
                values,
                page_size=self.page_size,
            )
        return len(values)

    # ------------------------------------------------------ classification
    @staticmethod
    def _batch(row: tuple[Any, ...]) -> ClassificationBatch:
        return ClassificationBatch(
            id=row[0], tenant_id=row[1], run_id=row[2], file_name=row[3], file_hash=row[4], sequence=row[5],
            raw_row_count=row[6], parsed_count=row[7], status=BatchStatus(row[8]),
            lifecycle=BatchLifecycle(row[9]), summary=_json(row[10]) or {}, issues=tuple(_json(row[11]) or ()),
            created_by=row[12], created_at=row[13],
        )

    def insert_classification_batch(
        self, batch: ClassificationBatch, results: Sequence[ClassificationResult]
    ) -> None:
        require_tenant(batch.tenant_id)
        try:
            with self._transaction() as cur:
                if batch.is_acceptable:
                    cur.execute(
                        "UPDATE ptrs_classification_batch SET lifecycle = %s "
                        "WHERE tenant_id = %s AND run_id = %s AND lifecycle = %s",
                        (BatchLifecycle.SUPERSEDED.value, batch.tenant_id, batch.run_id,
                         BatchLifecycle.ACTIVE.value),
                    )
                cur.execute(
                    f"INSERT INTO ptrs_classification_batch ({_BATCH_COLS}) "
                    "VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s::jsonb,%s::jsonb,%s,%s)",
                    (batch.id, batch.tenant_id, batch.run_id, batch.file_name, batch.file_hash, batch.sequence,
                     batch.raw_row_count, batch.parsed_count, batch.status.value, batch.lifecycle.value,
                     json_codec.dumps(batch.summary), json_codec.dumps(list(batch.issues)), batch.created_by,
                     batch.created_at),
                )
                batch_insert(
                    cur, "ptrs_classification_result", _RESULT_COLS,
                    ((r.batch_id, batch.tenant_id, r.identifier, r.outcome, r.verdict.value, r.is_valid_abn,
                      r.year, r.row_no) for r in results),
                    page_size=self.page_size,
                )
        except BatchInsertError as e:
            raise StorageError(f"failed to write classification results: {e}") from e

    def list_classification_batches(self, tenant_id: str, run_id: str) -> list[ClassificationBatch]:
        require_tenant(tenant_id)
        rows = self._fetchall(
            f"SELECT {_BATCH_COLS} FROM ptrs_classification_batch WHERE tenant_id = %s AND run_id = %s "
            "ORDER BY sequence",
            (tenant_id, run_id),
        )
        return [self._batch(r) for r in rows]

    def get_classification_results(self, tenant_id: str, batch_id: str) -> list[ClassificationResult]:
        require_tenant(tenant_id)
        rows = self._fetchall(
            f"SELECT {', '.join(_RESULT_COLS)} FROM ptrs_classification_result "
            "WHERE tenant_id = %s AND batch_id = %s ORDER BY identifier",
            (tenant_id, batch_id),
        )
        return [
            ClassificationResult(batch_id=r[0], identifier=r[2], outcome=r[3], verdict=Verdict(r[4]),
                                 is_valid_abn=bool(r[5]), year=r[6], row_no=r[7])
            for r in rows
        ]

    def update_classification_batch(self, batch: ClassificationBatch) -> None:
        require_tenant(batch.tenant_id)
        with self._transaction() as cur:
            cur.execute(
                "UPDATE ptrs_classification_batch SET status = %s, lifecycle = %s, summary = %s::jsonb "
                "WHERE tenant_id = %s AND id = %s",
                (batch.status.value, batch.lifecycle.value, json_codec.dumps(batch.summary),
                 batch.tenant_id, batch.id),
            )

    # ---------------------------------------------------------- executions
    @staticmethod
    def _execution(row: tuple[Any, ...]) -> StepExecution:
        return StepExecution(
            id=row[0], tenant_id=row[1], run_id=row[2], step=row[3], input_hash=row[4],
            status=ExecutionStatus(row[5]), rows_in=row[6], rows_out=row[7], stats=_json(row[8]) or {},
            error_message=row[9], started_at=row[10], finished_at=row[11], created_by=row[12],
        )

    def _execution_params(self, e: StepExecution) -> tuple[Any, ...]:
        d = asdict(e)
        d["status"] = e.status.value
        d["stats"] = json_codec.dumps(e.stats)
        return tuple(d[c.strip()] for c in _EXEC_COLS.split(","))

    def insert_execution(self, execution: StepExecution) -> None:
        require_tenant(execution.tenant_id)
        with self._transaction() as cur:
            cur.execute(
                f"INSERT INTO ptrs_step_execution ({_EXEC_COLS}) "
                "VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s::jsonb,%s,%s,%s,%s)",
                self._execution_params(execution),
            )

    def update_execution(self, execution: StepExecution) -> None:
        require_tenant(execution.tenant_id)
        with self._transaction() as cur:
            cur.execute(
                "UPDATE ptrs_step_execution SET status = %s, rows_in = %s, rows_out = %s, stats = %s::jsonb, "
                "error_message = %s, finished_at = %s WHERE tenant_id = %s AND id = %s",
                (execution.status.value, execution.rows_in, execution.rows_out, json_codec.dumps(execution.stats),
                 execution.error_message, execution.finished_at, execution.tenant_id, execution.id),
            )

    def list_executions(self, tenant_id: str, run_id: str, step: str | None = None) -> list[StepExecution]:
        require_tenant(tenant_id)
        sql = f"SELECT {_EXEC_COLS} FROM ptrs_step_execution WHERE tenant_id = %s AND run_id = %s"
        params: list[Any] = [tenant_id, run_id]
        if step is not None:
            sql += " AND step = %s"
            params.append(step)
        return [self._execution(r) for r in self._fetchall(sql + " ORDER BY started_at, id", params)]
