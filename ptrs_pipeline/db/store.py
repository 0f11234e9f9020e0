from __future__ import annotations

import copy
import threading
from collections.abc import Sequence
from dataclasses import replace
from typing import Any, Protocol

from ..errors import NotFoundError
from ..models.classification import BatchLifecycle, ClassificationBatch, ClassificationResult
from ..models.column_map import ColumnMap
from ..models.dataset import Dataset
from ..models.processing_result import StepExecution
from ..models.run import Run
from ..models.staged_row import RowAnnotations, StagedRow
from ..tenancy import require_tenant

"""Store protocol and the in-memory implementation.

Every method takes the tenant id first. A missing tenant id raises
``TenantScopeError``; an id that exists for another tenant reads exactly like
an unknown id (``NotFoundError`` with the same message).

Multi-record writes (``replace_staged_rows``, ``update_annotations``,
``insert_classification_batch``) are atomic: either all of it is visible
afterwards or none of it.
"""

__all__ = [
    "Store",
    "InMemoryStore",
]


class Store(Protocol):
    # runs
    def insert_run(self, run: Run) -> None: ...
    def get_run(self, tenant_id: str, run_id: str) -> Run: ...
    def update_run(self, run: Run) -> None: ...

    # datasets
    def insert_dataset(self, dataset: Dataset, rows: Sequence[dict[str, Any]] | None = None) -> None: ...
    def get_dataset(self, tenant_id: str, dataset_id: str) -> Dataset: ...
    def list_datasets(self, tenant_id: str, run_id: str, role: str | None = None) -> list[Dataset]: ...
    def get_dataset_rows(self, tenant_id: str, dataset_id: str) -> list[dict[str, Any]]: ...

    # column maps
    def get_column_map(self, tenant_id: str, run_id: str) -> ColumnMap | None: ...
    def save_column_map(self, column_map: ColumnMap) -> None: ...

    # staged rows
    def replace_staged_rows(self, tenant_id: str, run_id: str, rows: Sequence[StagedRow]) -> int: ...
    def list_staged_rows(self, tenant_id: str, run_id: str) -> list[StagedRow]: ...
    def update_annotations(self, tenant_id: str, run_id: str, annotations: dict[int, RowAnnotations]) -> int: ...

    # classification
    def insert_classification_batch(
        self, batch: ClassificationBatch, results: Sequence[ClassificationResult]
    ) -> None: ...
    def list_classification_batches(self, tenant_id: str, run_id: str) -> list[ClassificationBatch]: ...
    def get_classification_results(self, tenant_id: str, batch_id: str) -> list[ClassificationResult]: ...
    def update_classification_batch(self, batch: ClassificationBatch) -> None: ...

    # step executions
    def insert_execution(self, execution: StepExecution) -> None: ...
    def update_execution(self, execution: StepExecution) -> None: ...
    def list_executions(self, tenant_id: str, run_id: str, step: str | None = None) -> list[StepExecution]: ...


class InMemoryStore:
    """Thread-safe dict-backed store.

    Used by the test-suite and by the CLI when no database is reachable.
    Rows handed in and out are deep copies, so callers can never mutate stored
    state without going through a store method.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._runs: dict[str, Run] = {}
        self._datasets: dict[str, Dataset] = {}
        self._dataset_rows: dict[str, list[dict[str, Any]]] = {}
        self._column_maps: dict[str, ColumnMap] = {}  # run_id -> live map
        self._staged: dict[str, dict[int, StagedRow]] = {}  # run_id -> row_no -> row
        self._batches: dict[str, ClassificationBatch] = {}
        self._results: dict[str, list[ClassificationResult]] = {}
        self._executions: dict[str, StepExecution] = {}
        self._execution_order: list[str] = []

    # ------------------------------------------------------------------ runs
    def insert_run(self, run: Run) -> None:
        require_tenant(run.tenant_id)
        with self._lock:
            self._runs[run.id] = run

    def get_run(self, tenant_id: str, run_id: str) -> Run:
        require_tenant(tenant_id)
        with self._lock:
            run = self._runs.get(run_id)
        if run is None or run.tenant_id != tenant_id:
            raise NotFoundError(f"run {run_id} not found")
        return run

    def update_run(self, run: Run) -> None:
        self.get_run(run.tenant_id, run.id)
        with self._lock:
            self._runs[run.id] = run

    def _check_run(self, tenant_id: str, run_id: str) -> None:
        self.get_run(tenant_id, run_id)

    # -------------------------------------------------------------- datasets
    def insert_dataset(self, dataset: Dataset, rows: Sequence[dict[str, Any]] | None = None) -> None:
        self._check_run(dataset.tenant_id, dataset.run_id)
        with self._lock:
            self._datasets[dataset.id] = dataset
            self._dataset_rows[dataset.id] = copy.deepcopy(list(rows or []))

    def get_dataset(self, tenant_id: str, dataset_id: str) -> Dataset:
        require_tenant(tenant_id)
        with self._lock:
            ds = self._datasets.get(dataset_id)
        if ds is None or ds.tenant_id != tenant_id:
            raise NotFoundError(f"dataset {dataset_id} not found")
        return ds

    def list_datasets(self, tenant_id: str, run_id: str, role: str | None = None) -> list[Dataset]:
        self._check_run(tenant_id, run_id)
        with self._lock:
            found = [
                d for d in self._datasets.values()
                if d.tenant_id == tenant_id and d.run_id == run_id and (role is None or d.role == role)
            ]
        return found

    def get_dataset_rows(self, tenant_id: str, dataset_id: str) -> list[dict[str, Any]]:
        self.get_dataset(tenant_id, dataset_id)
        with self._lock:
            return copy.deepcopy(self._dataset_rows.get(dataset_id, []))

    # ----------------------------------------------------------- column maps
    def get_column_map(self, tenant_id: str, run_id: str) -> ColumnMap | None:
        self._check_run(tenant_id, run_id)
        with self._lock:
            cm = self._column_maps.get(run_id)
        return cm

    def save_column_map(self, column_map: ColumnMap) -> None:
        self._check_run(column_map.tenant_id, column_map.run_id)
        with self._lock:
            self._column_maps[column_map.run_id] = replace(column_map, document=copy.deepcopy(column_map.document))

    # ----------------------------------------------------------- staged rows
    def replace_staged_rows(self, tenant_id: str, run_id: str, rows: Sequence[StagedRow]) -> int:
        self._check_run(tenant_id, run_id)
        fresh: dict[int, StagedRow] = {}
        for r in rows:
            if r.tenant_id != tenant_id or r.run_id != run_id:
                raise ValueError(f"row {r.row_no} does not belong to run {run_id}")
            if r.row_no in fresh:
                raise ValueError(f"duplicate row_no {r.row_no}")
            fresh[r.row_no] = copy.deepcopy(r)
        with self._lock:
            self._staged[run_id] = fresh
        return len(fresh)

    def list_staged_rows(self, tenant_id: str, run_id: str) -> list[StagedRow]:
        self._check_run(tenant_id, run_id)
        with self._lock:
            rows = list(self._staged.get(run_id, {}).values())
            return copy.deepcopy(sorted(rows, key=lambda r: r.row_no))

    def update_annotations(self, tenant_id: str, run_id: str, annotations: dict[int, RowAnnotations]) -> int:
        self._check_run(tenant_id, run_id)
        with self._lock:
            current = self._staged.get(run_id, {})
            unknown = sorted(set(annotations) - set(current))
            if unknown:
                raise NotFoundError(f"staged row(s) {unknown[:5]} not found")
            for row_no, ann in annotations.items():
                current[row_no].annotations = copy.deepcopy(ann)
        return len(annotations)

    # -------------------------------------------------------- classification
    def insert_classification_batch(
        self, batch: ClassificationBatch, results: Sequence[ClassificationResult]
    ) -> None:
        """Insert a batch; an acceptable batch marks every other active batch of the run superseded."""
        self._check_run(batch.tenant_id, batch.run_id)
        with self._lock:
            if batch.is_acceptable:
                for other in list(self._batches.values()):
                    if (other.run_id == batch.run_id and other.tenant_id == batch.tenant_id
                            and other.lifecycle is BatchLifecycle.ACTIVE):
                        self._batches[other.id] = replace(other, lifecycle=BatchLifecycle.SUPERSEDED)
            self._batches[batch.id] = batch
            self._results[batch.id] = list(results)

    def list_classification_batches(self, tenant_id: str, run_id: str) -> list[ClassificationBatch]:
        self._check_run(tenant_id, run_id)
        with self._lock:
            found = [b for b in self._batches.values() if b.tenant_id == tenant_id and b.run_id == run_id]
        return sorted(found, key=lambda b: b.sequence)

    def get_classification_results(self, tenant_id: str, batch_id: str) -> list[ClassificationResult]:
        require_tenant(tenant_id)
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.tenant_id != tenant_id:
                raise NotFoundError(f"classification batch {batch_id} not found")
            return list(self._results.get(batch_id, []))

    def update_classification_batch(self, batch: ClassificationBatch) -> None:
        self.get_classification_results(batch.tenant_id, batch.id)
        with self._lock:
            self._batches[batch.id] = batch

    # -------------------------------------------------------- executions
    def insert_execution(self, execution: StepExecution) -> None:
        self._check_run(execution.tenant_id, execution.run_id)
        with self._lock:
            self._executions[execution.id] = execution
            self._execution_order.append(execution.id)

    def update_execution(self, execution: StepExecution) -> None:
        require_tenant(execution.tenant_id)
        with self._lock:
            if execution.id not in self._executions:
                raise NotFoundError(f"execution {execution.id} not found")
            self._executions[execution.id] = execution

    def list_executions(self, tenant_id: str, run_id: str, step: str | None = None) -> list[StepExecution]:
        self._check_run(tenant_id, run_id)
        with self._lock:
            return [
                e for e in (self._executions[i] for i in self._execution_order)
                if e.tenant_id == tenant_id and e.run_id == run_id and (step is None or e.step == step)
            ]
