from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, TypeVar

from ..config.loader import PipelineConfig, validate_column_map_document
from ..datasets.reader import content_hash, read_table_bytes, sample_rows
from ..db.store import Store
from ..errors import (
    ConfigError,
    DatasetInputError,
    DatasetParseError,
    NotFoundError,
    ReportBlockedError,
    RuleConfigError,
    RunStateError,
    StepCancelled,
)
from ..ids import IdGenerator
from ..logging.audit_log import AuditEvent, AuditLogBuffer, AuditSink
from ..logging.error_log import ErrorLogBuffer, ErrorRecord
from ..models.classification import BatchLifecycle, ClassificationBatch
from ..models.column_map import ColumnMap, MapLifecycle, ResolvedMapping
from ..models.dataset import MAIN_ROLE, Dataset, DatasetStatus
from ..models.processing_result import ExecutionStatus, PipelineRunResult, StepExecution, StepResult
from ..models.rules import JoinLookupRule
from ..models.run import Run, RunStatus, Step
from ..models.staged_row import StagedRow
from ..models.validation import ValidationVerdict
from ..tenancy import TenantContext
from . import classification as cls
from .mapping_resolver import merge_documents, parse_column_map, resolve_mapping
from .progress import ProgressTracker
from .rule_engine import RuleOutcome, apply_rules, parse_rules, preview_rules
from .staging import compute_input_hash, stage_rows
from .validation_gate import compute_verdict

"""Pipeline service: the entry point for every operation on a run.

Steps for one run (mapping → staging → rules → classification → validation)
are serialised by a per-run lock, so no step reads a run's rows while another
step for that run is still writing them. Different runs share no mutable
state and may be processed concurrently.

Re-running a step recomputes everything downstream of it before the single
write that ends the step:
    stage           → rules → classification match
    apply_rules     → classification match
    import / apply classification → (validation is always computed on demand)

The gate compares the input hash of the last successful staging with the
hash of the run's current datasets and column map: registering a new main
dataset or saving a different map leaves the staged rows stale (the verdict
is blocked with STAGING_STALE) until ``stage`` runs again.

Every mutating call takes a ``TenantContext``; the actor is attached to the
audit event and the step execution record, for attribution only.
"""

__all__ = [
    "ClassificationImport",
    "PipelineService",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BATCH_ISSUES = 200


@dataclass(frozen=True)
class ClassificationImport:
    batch: ClassificationBatch
    created: bool  # False: 同一ハッシュの再取込 (no-op)
    match: cls.MatchSummary | None = None


class PipelineService:
    def __init__(
        self,
        store: Store,
        ids: IdGenerator,
        *,
        config: PipelineConfig | None = None,
        audit: AuditSink | None = None,
        error_log: ErrorLogBuffer | None = None,
    ) -> None:
        self.store = store
        self.ids = ids
        self.config = config or PipelineConfig()
        self.audit = audit if audit is not None else AuditLogBuffer(self.config.logs_directory)
        self.error_log = error_log if error_log is not None else ErrorLogBuffer(self.config.logs_directory)
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------ infra
    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    def _lock_for(self, run_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(run_id)
            if lock is None:
                lock = self._locks[run_id] = threading.RLock()
            return lock

    @contextmanager
    def _run_step(self, ctx: TenantContext, run_id: str) -> Iterator[Run]:
        """Hold the run's lock and yield the (non-retired) run."""
        with self._lock_for(run_id):
            run = self.store.get_run(ctx.tenant_id, run_id)
            if run.is_retired:
                raise RunStateError(f"run {run_id} is retired")
            yield run

    def _audit(self, ctx: TenantContext, run_id: str | None, action: str, **details: Any) -> None:
        self.audit.record(AuditEvent.create(ctx.tenant_id, ctx.actor_id, run_id, action, **details))

    def _advance(self, run: Run, status: RunStatus, step: Step) -> Run:
        updated = replace(run, status=status, current_step=step, updated_at=self._now())
        self.store.update_run(updated)
        return updated

    def _start(self, ctx: TenantContext, run: Run, step: Step, input_hash: str | None, rows_in: int = 0
               ) -> StepExecution:
        execution = StepExecution(
            id=self.ids.new_id(),
            tenant_id=ctx.tenant_id,
            run_id=run.id,
            step=step.value,
            input_hash=input_hash,
            status=ExecutionStatus.RUNNING,
            rows_in=rows_in,
            started_at=self._now(),
            created_by=ctx.actor_id,
        )
        self.store.insert_execution(execution)
        return execution

    def _finish(self, execution: StepExecution, status: ExecutionStatus, *, rows_out: int = 0,
                stats: dict[str, Any] | None = None, error: str | None = None) -> StepExecution:
        done = replace(execution, status=status, rows_out=rows_out, stats=stats or {}, error_message=error,
                       finished_at=self._now())
        self.store.update_execution(done)
        return done

    def _fail(self, execution: StepExecution, run_id: str, error: BaseException, dataset: str = "") -> None:
        status = ExecutionStatus.CANCELLED if isinstance(error, StepCancelled) else ExecutionStatus.FAILED
        code = getattr(error, "code", type(error).__name__.upper())
        self._finish(execution, status, error=str(error))
        self.error_log.append(ErrorRecord.create(run_id, dataset, -1, code, str(error)))
        self.error_log.flush()

    # ------------------------------------------------------------------ runs
    def create_run(self, ctx: TenantContext, *, profile_id: str | None = None,
                   meta: dict[str, Any] | None = None) -> Run:
        if profile_id is not None and self.config.profile(profile_id) is None:
            raise NotFoundError(f"profile {profile_id} not found")
        now = self._now()
        run = Run(
            id=self.ids.new_id(),
            tenant_id=ctx.tenant_id,
            profile_id=profile_id,
            meta=dict(meta or {}),
            created_by=ctx.actor_id,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_run(run)
        self._audit(ctx, run.id, "run.create", profile_id=profile_id)
        logger.info(f"run {run.id} created (tenant={ctx.tenant_id})")
        return run

    def get_run(self, ctx: TenantContext, run_id: str) -> Run:
        return self.store.get_run(ctx.tenant_id, run_id)

    def retire_run(self, ctx: TenantContext, run_id: str) -> Run:
        """Soft-retire a run: rows and batches are kept, lifecycles set to retired."""
        with self._run_step(ctx, run_id) as run:
            cm = self.store.get_column_map(ctx.tenant_id, run_id)
            if cm is not None:
                self.store.save_column_map(replace(cm, lifecycle=MapLifecycle.RETIRED, updated_at=self._now(),
                                                   updated_by=ctx.actor_id))
            for batch in self.store.list_classification_batches(ctx.tenant_id, run_id):
                if batch.lifecycle is not BatchLifecycle.RETIRED:
                    self.store.update_classification_batch(replace(batch, lifecycle=BatchLifecycle.RETIRED))
            retired = replace(run, status=RunStatus.RETIRED, updated_at=self._now())
            self.store.update_run(retired)
        self._audit(ctx, run_id, "run.retire")
        return retired

    # -------------------------------------------------------------- datasets
    def register_dataset(
        self,
        ctx: TenantContext,
        run_id: str,
        *,
        role: str = MAIN_ROLE,
        file_name: str | None = None,
        data: bytes | None = None,
        rows: list[dict[str, Any]] | None = None,
        headers: list[str] | None = None,
    ) -> Dataset:
        """Attach a dataset to a run.

        Either ``data`` (raw CSV / XLSX bytes, parsed here with pandas) or
        ``rows`` (already parsed by the caller) must be given. A file that
        cannot be parsed is stored with status ``failed`` and the error,
        then ``DatasetParseError`` is raised.
        """
        if (data is None) == (rows is None):
            raise DatasetInputError("exactly one of data / rows is required",
                                    details={"data": data is not None, "rows": rows is not None})
        with self._run_step(ctx, run_id):
            dataset_id = self.ids.new_id()
            base = Dataset(
                id=dataset_id,
                tenant_id=ctx.tenant_id,
                run_id=run_id,
                role=role,
                file_name=file_name,
                storage_ref=None,
                created_by=ctx.actor_id,
                created_at=self._now(),
            )
            if data is not None:
                try:
                    table = read_table_bytes(data, file_name or "upload.csv",
                                             timeout=self.config.staging.io_timeout_seconds)
                except DatasetParseError as e:
                    failed = replace(base, storage_ref=content_hash(data), status=DatasetStatus.FAILED,
                                     meta={"error": e.message})
                    self.store.insert_dataset(failed)
                    self.error_log.append(ErrorRecord.create(run_id, dataset_id, -1, e.code, e.message))
                    self.error_log.flush()
                    self._audit(ctx, run_id, "dataset.failed", dataset_id=dataset_id, role=role)
                    logger.error(f"dataset {file_name} failed to parse: {e.message}")
                    raise DatasetParseError(e.message, details={"dataset_id": dataset_id}) from e
                columns, parsed, ref = table.columns, table.rows, table.content_hash
            else:
                parsed = list(rows or [])
                columns = list(headers) if headers else list(dict.fromkeys(k for r in parsed for k in r))
                ref = content_hash(json.dumps([columns, parsed], sort_keys=True, default=str).encode("utf-8"))

            dataset = replace(
                base,
                storage_ref=ref,
                row_count=len(parsed),
                status=DatasetStatus.PARSED,
                meta={"headers": columns, "sample_rows": sample_rows(parsed)},
            )
            self.store.insert_dataset(dataset, parsed)
        self._audit(ctx, run_id, "dataset.register", dataset_id=dataset.id, role=role, rows=len(parsed))
        logger.info(f"dataset {dataset.id} ({role}) registered: {len(parsed)} rows")
        return dataset

    def _main_dataset(self, ctx: TenantContext, run_id: str) -> Dataset:
        datasets = self.store.list_datasets(ctx.tenant_id, run_id, role=MAIN_ROLE)
        if not datasets:
            raise RunStateError(f"run {run_id} has no main dataset")
        latest = datasets[-1]
        if latest.status is DatasetStatus.FAILED:
            raise DatasetParseError(f"main dataset {latest.id} failed to parse: {latest.meta.get('error')}",
                                    details={"dataset_id": latest.id})
        return latest

    def _aux_datasets(self, ctx: TenantContext, run_id: str, roles: set[str]) -> dict[str, Dataset]:
        latest: dict[str, Dataset] = {}
        for role in sorted(roles):
            found = [d for d in self.store.list_datasets(ctx.tenant_id, run_id, role=role)
                     if d.status is DatasetStatus.PARSED]
            if found:
                latest[role] = found[-1]
        return latest

    def _aux_rows(self, ctx: TenantContext, run_id: str, roles: set[str]) -> tuple[dict[str, list], dict[str, str]]:
        datasets = self._aux_datasets(ctx, run_id, roles)
        rows = {role: self.store.get_dataset_rows(ctx.tenant_id, ds.id) for role, ds in datasets.items()}
        refs = {role: ds.storage_ref or "" for role, ds in datasets.items()}
        return rows, refs

    def _staging_hashes(self, ctx: TenantContext, run: Run) -> tuple[str | None, str]:
        """(input hash of the last successful staging, input hash of the current inputs).

        The current hash is "" when the inputs cannot be staged at all (no
        usable main dataset or an unresolvable column map), which never
        equals a recorded hash.
        """
        staged = [e for e in self.store.list_executions(ctx.tenant_id, run.id, Step.STAGE.value)
                  if e.status is ExecutionStatus.SUCCESS]
        staged_hash = staged[-1].input_hash if staged else None
        try:
            main = self._main_dataset(ctx, run.id)
            mapping = resolve_mapping(self._document(ctx, run), main.headers)
        except (RunStateError, DatasetParseError, ConfigError) as e:
            logger.debug(f"run {run.id}: staging inputs not usable: {e}")
            return staged_hash, ""
        aux = self._aux_datasets(ctx, run.id, {j.role for j in mapping.joins})
        refs = {role: ds.storage_ref or "" for role, ds in aux.items()}
        return staged_hash, compute_input_hash(main.storage_ref, refs, mapping)

    # ----------------------------------------------------------- column maps
    def _document(self, ctx: TenantContext, run: Run) -> dict[str, Any]:
        """Profile defaults merged underneath the run's stored column map."""
        cm = self.store.get_column_map(ctx.tenant_id, run.id)
        return merge_documents(self.config.profile(run.profile_id), cm.document if cm else None)

    def save_column_map(self, ctx: TenantContext, run_id: str, document: dict[str, Any]) -> ColumnMap:
        """Store (overwrite) the run's column map after validating it."""
        validate_column_map_document(document)
        with self._run_step(ctx, run_id) as run:
            parse_column_map(merge_documents(self.config.profile(run.profile_id), document))
            current = self.store.get_column_map(ctx.tenant_id, run_id)
            cm = ColumnMap(
                id=current.id if current else self.ids.new_id(),
                tenant_id=ctx.tenant_id,
                run_id=run_id,
                document=dict(document),
                profile_id=run.profile_id,
                version=(current.version + 1) if current else 1,
                updated_by=ctx.actor_id,
                updated_at=self._now(),
            )
            self.store.save_column_map(cm)
            self._advance(run, RunStatus.MAPPED, Step.MAP)
        self._audit(ctx, run_id, "column_map.save", version=cm.version)
        return cm

    def preview_mapping(self, ctx: TenantContext, run_id: str,
                        document: dict[str, Any] | None = None) -> ResolvedMapping:
        """Resolve a column map against the main dataset headers without storing anything."""
        run = self.store.get_run(ctx.tenant_id, run_id)
        if document is not None:
            validate_column_map_document(document)
            doc = merge_documents(self.config.profile(run.profile_id), document)
        else:
            doc = self._document(ctx, run)
        return resolve_mapping(doc, self._main_dataset(ctx, run_id).headers)

    # --------------------------------------------------------------- staging
    def stage(
        self,
        ctx: TenantContext,
        run_id: str,
        *,
        reuse: bool = False,
        cancel_event: threading.Event | None = None,
        show_progress: bool = False,
    ) -> StepResult:
        """Stage the main dataset, then re-apply rules and classification.

        Args:
            reuse: Skip staging when the previous successful staging had the same input hash
            cancel_event: Cooperative cancellation, checked between row batches.
                A cancelled step leaves the previously staged rows untouched.
        """
        started = time.perf_counter()
        with self._run_step(ctx, run_id) as run:
            main = self._main_dataset(ctx, run_id)
            doc = self._document(ctx, run)
            mapping = resolve_mapping(doc, main.headers)
            join_roles = {j.role for j in mapping.joins}
            aux_rows, aux_refs = self._aux_rows(ctx, run_id, join_roles)
            input_hash = compute_input_hash(main.storage_ref, aux_refs, mapping)

            if reuse:
                previous = [e for e in self.store.list_executions(ctx.tenant_id, run_id, Step.STAGE.value)
                            if e.status is ExecutionStatus.SUCCESS]
                if previous and previous[-1].input_hash == input_hash:
                    logger.info(f"run {run_id}: staging inputs unchanged, reusing staged rows")
                    return StepResult(step=Step.STAGE.value, run_id=run_id, rows_in=previous[-1].rows_in,
                                      rows_out=previous[-1].rows_out, elapsed_seconds=time.perf_counter() - started,
                                      input_hash=input_hash, reused=True)

            source_rows = self.store.get_dataset_rows(ctx.tenant_id, main.id)
            execution = self._start(ctx, run, Step.STAGE, input_hash, rows_in=len(source_rows))
            try:
                progress = ProgressTracker(len(source_rows), description="Staging rows") if show_progress else None
                try:
                    outcome = stage_rows(
                        ctx.tenant_id, run_id, source_rows, mapping,
                        dataset_id=main.id,
                        aux_rows=aux_rows,
                        batch_size=self.config.staging.batch_size,
                        workers=self.config.staging.workers,
                        cancel_event=cancel_event,
                        on_batch=progress.update if progress else None,
                    )
                finally:
                    if progress is not None:
                        progress.close()
                rows = outcome.rows
                status, step_stats = self._cascade_after_stage(ctx, run, doc, rows)
                self.store.replace_staged_rows(ctx.tenant_id, run_id, rows)
            except Exception as e:
                self._fail(execution, run_id, e, main.id)
                raise

            self._record_row_errors(run_id, main.id, rows)
            total, avg, p95 = outcome.batch_stats
            stats = {**outcome.stats, **step_stats, "mapping_issues": list(mapping.issues)}
            self._finish(execution, ExecutionStatus.SUCCESS, rows_out=len(rows), stats=stats)
            self._advance(run, status, Step.STAGE)

        self._audit(ctx, run_id, "stage", rows=len(rows), input_hash=input_hash)
        logger.info(f"run {run_id}: staged {len(rows)} rows ({outcome.error_rows} with errors)")
        return StepResult(
            step=Step.STAGE.value,
            run_id=run_id,
            rows_in=len(source_rows),
            rows_out=len(rows),
            elapsed_seconds=time.perf_counter() - started,
            input_hash=input_hash,
            error_rows=outcome.error_rows,
            excluded_rows=sum(1 for r in rows if r.excluded),
            stats=stats,
            total_batches=total,
            avg_batch_seconds=avg,
            p95_batch_seconds=p95,
        )

    def _cascade_after_stage(self, ctx: TenantContext, run: Run, doc: dict[str, Any], rows: list[StagedRow]
                             ) -> tuple[RunStatus, dict[str, Any]]:
        """Re-derive rule and classification annotations for freshly staged rows."""
        status = RunStatus.STAGED
        stats: dict[str, Any] = {}
        raw_rules = doc.get("rules") or []
        if raw_rules:
            try:
                outcome = self._apply(ctx, run.id, raw_rules, rows)
            except RuleConfigError as e:
                # ステージングは有効。ルール設定の修正後に apply_rules を再実行する
                logger.warning(f"run {run.id}: rules not applied after staging: {e.message}")
                stats["rules_error"] = e.message
                outcome = None
            if outcome is not None:
                status = RunStatus.RULES_APPLIED
                stats["excluded_rows"] = outcome.excluded_rows
        latest = self._latest_batch(ctx, run.id)
        if latest is not None:
            results = self.store.get_classification_results(ctx.tenant_id, latest.id)
            stats["classification"] = cls.match_rows(rows, latest, results).to_dict()
            status = RunStatus.CLASSIFIED
        return status, stats

    def _record_row_errors(self, run_id: str, dataset_id: str, rows: list[StagedRow]) -> None:
        for row in rows:
            for err in row.all_errors():
                self.error_log.append(ErrorRecord.create(
                    run_id, dataset_id, row.row_no, err.code,
                    f"{err.field}: {err.message} (raw={err.raw_value!r}, type={err.target_type})",
                ))
        self.error_log.flush()

    # ----------------------------------------------------------------- rules
    def _apply(self, ctx: TenantContext, run_id: str, raw_rules: list[Any], rows: list[StagedRow]) -> RuleOutcome:
        rules = parse_rules(raw_rules)
        roles = {r.role for r in rules if isinstance(r, JoinLookupRule)}
        aux_rows, _ = self._aux_rows(ctx, run_id, roles)
        return apply_rules(rows, rules, aux_rows=aux_rows, workers=self.config.staging.workers)

    def apply_rules(self, ctx: TenantContext, run_id: str) -> StepResult:
        """Re-apply the run's rule list to its staged rows (no re-staging)."""
        started = time.perf_counter()
        with self._run_step(ctx, run_id) as run:
            doc = self._document(ctx, run)
            raw_rules = doc.get("rules") or []
            rows = self.store.list_staged_rows(ctx.tenant_id, run_id)
            if not rows:
                raise RunStateError(f"run {run_id} has no staged rows")
            input_hash = content_hash(json.dumps(raw_rules, sort_keys=True, default=str).encode("utf-8"))
            execution = self._start(ctx, run, Step.RULES, input_hash, rows_in=len(rows))
            try:
                outcome = self._apply(ctx, run_id, raw_rules, rows)
                status = RunStatus.RULES_APPLIED
                stats: dict[str, Any] = {"excluded_rows": outcome.excluded_rows,
                                         "rule_error_rows": outcome.rule_error_rows, "applied": outcome.applied}
                latest = self._latest_batch(ctx, run_id)
                if latest is not None:
                    results = self.store.get_classification_results(ctx.tenant_id, latest.id)
                    stats["classification"] = cls.match_rows(rows, latest, results).to_dict()
                    status = RunStatus.CLASSIFIED
                self.store.update_annotations(ctx.tenant_id, run_id, {r.row_no: r.annotations for r in rows})
            except Exception as e:
                self._fail(execution, run_id, e)
                raise
            self._finish(execution, ExecutionStatus.SUCCESS, rows_out=len(rows), stats=stats)
            self._advance(run, status, Step.RULES)
        self._audit(ctx, run_id, "rules.apply", rules=len(outcome.rules), excluded=outcome.excluded_rows)
        return StepResult(
            step=Step.RULES.value,
            run_id=run_id,
            rows_in=len(rows),
            rows_out=len(rows),
            elapsed_seconds=time.perf_counter() - started,
            input_hash=input_hash,
            error_rows=outcome.rule_error_rows,
            excluded_rows=outcome.excluded_rows,
            stats=stats,
        )

    def preview_rules(self, ctx: TenantContext, run_id: str, rules: list[Any] | None = None,
                      limit: int = 20) -> RuleOutcome:
        """Apply ``rules`` (default: the stored rule list) to copies of the staged rows."""
        run = self.store.get_run(ctx.tenant_id, run_id)
        raw_rules = rules if rules is not None else (self._document(ctx, run).get("rules") or [])
        parsed = parse_rules(raw_rules)
        roles = {r.role for r in parsed if isinstance(r, JoinLookupRule)}
        aux_rows, _ = self._aux_rows(ctx, run_id, roles)
        return preview_rules(self.store.list_staged_rows(ctx.tenant_id, run_id), parsed, aux_rows=aux_rows,
                             limit=limit)

    # -------------------------------------------------------- classification
    def _batches(self, ctx: TenantContext, run_id: str) -> list[ClassificationBatch]:
        return [b for b in self.store.list_classification_batches(ctx.tenant_id, run_id)
                if b.lifecycle is not BatchLifecycle.RETIRED]

    def _latest_batch(self, ctx: TenantContext, run_id: str) -> ClassificationBatch | None:
        """Latest active batch with an acceptable status: the one rows are matched against."""
        usable = [b for b in self._batches(ctx, run_id)
                  if b.lifecycle is BatchLifecycle.ACTIVE and b.is_acceptable]
        return usable[-1] if usable else None

    def _newest_batch(self, ctx: TenantContext, run_id: str) -> ClassificationBatch | None:
        """Most recently imported batch, whatever its status."""
        batches = self._batches(ctx, run_id)
        return batches[-1] if batches else None

    def _gate_batch(self, ctx: TenantContext, run_id: str) -> ClassificationBatch | None:
        return self._latest_batch(ctx, run_id) or self._newest_batch(ctx, run_id)

    def import_classification(
        self,
        ctx: TenantContext,
        run_id: str,
        data: bytes,
        *,
        file_name: str = "classification.csv",
        apply: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> ClassificationImport:
        """Import a classification results file as a new batch.

        Importing the same bytes as the run's newest batch is a no-op that
        returns that batch. An acceptable batch supersedes the previous one
        and, with ``apply``, the staged rows are matched against it. A blocked
        batch (nothing usable, or an unrecognised outcome for a staged payee)
        is stored for the record but leaves the previous acceptable batch and
        the row annotations in force.

        Raises:
            ClassificationFileError: the file is rejected (nothing is stored)
            StepCancelled: ``cancel_event`` was set before the batch was stored
        """
        with self._run_step(ctx, run_id) as run:
            file_hash = content_hash(data)
            newest = self._newest_batch(ctx, run_id)
            if newest is not None and newest.file_hash == file_hash:
                logger.info(f"run {run_id}: classification file unchanged, batch {newest.id} kept")
                return ClassificationImport(batch=newest, created=False)

            execution = self._start(ctx, run, Step.CLASSIFICATION, file_hash)
            try:
                parsed = cls.parse_classification_file(data, file_name,
                                                       timeout=self.config.staging.io_timeout_seconds,
                                                       cancel_event=cancel_event,
                                                       batch_size=self.config.staging.batch_size)
                staged_rows = self.store.list_staged_rows(ctx.tenant_id, run_id)
                batch_id = self.ids.new_id()
                batches = self.store.list_classification_batches(ctx.tenant_id, run_id)
                batch = ClassificationBatch(
                    id=batch_id,
                    tenant_id=ctx.tenant_id,
                    run_id=run_id,
                    file_name=file_name,
                    file_hash=parsed.file_hash,
                    sequence=(batches[-1].sequence + 1) if batches else 1,
                    raw_row_count=parsed.raw_row_count,
                    parsed_count=len(parsed.results),
                    status=cls.batch_status(parsed, staged_rows),
                    summary={**parsed.counts(),
                             "unknown_outcome_rows": cls.unknown_outcome_rows(staged_rows, parsed.results)},
                    issues=tuple(parsed.issues[:MAX_BATCH_ISSUES]),
                    created_by=ctx.actor_id,
                    created_at=self._now(),
                )
                results = [replace(r, batch_id=batch_id) for r in parsed.results]
                if cancel_event is not None and cancel_event.is_set():
                    raise StepCancelled(f"classification import of {file_name} cancelled before storing")
                self.store.insert_classification_batch(batch, results)
                match = None
                if apply and batch.is_acceptable:
                    match = self._match(ctx, run_id, batch, results)
            except Exception as e:
                self._fail(execution, run_id, e, file_name)
                raise
            stats = {"batch_id": batch.id, "status": batch.status.value, **batch.summary}
            if match is not None:
                stats["match"] = match.to_dict()
            self._finish(execution, ExecutionStatus.SUCCESS, rows_out=len(results), stats=stats)
            if match is not None:
                self._advance(run, RunStatus.CLASSIFIED, Step.CLASSIFICATION)
            else:
                self._advance(run, run.status, Step.CLASSIFICATION)
        self._audit(ctx, run_id, "classification.import", batch_id=batch.id, status=batch.status.value,
                    file_hash=batch.file_hash)
        if batch.is_acceptable:
            logger.info(f"run {run_id}: classification batch {batch.id} imported ({batch.status.value})")
        else:
            logger.warning(f"run {run_id}: classification batch {batch.id} is blocked "
                           f"({batch.summary['unknown_outcome_rows']} row(s) with an unrecognised outcome); "
                           "previous batch kept")
        return ClassificationImport(batch=batch, created=True, match=match)

    def _match(self, ctx: TenantContext, run_id: str, batch: ClassificationBatch, results: list
               ) -> cls.MatchSummary:
        rows = self.store.list_staged_rows(ctx.tenant_id, run_id)
        summary = cls.match_rows(rows, batch, results)
        self.store.update_annotations(ctx.tenant_id, run_id, {r.row_no: r.annotations for r in rows})
        return summary

    def apply_classification(self, ctx: TenantContext, run_id: str) -> cls.MatchSummary:
        """Match the staged rows against the latest acceptable batch."""
        with self._run_step(ctx, run_id) as run:
            latest = self._latest_batch(ctx, run_id)
            if latest is None:
                raise RunStateError(f"run {run_id} has no usable classification batch")
            results = self.store.get_classification_results(ctx.tenant_id, latest.id)
            summary = self._match(ctx, run_id, latest, results)
            self._advance(run, RunStatus.CLASSIFIED, Step.CLASSIFICATION)
        self._audit(ctx, run_id, "classification.apply", batch_id=latest.id, matched=summary.matched)
        return summary

    def classification_status(self, ctx: TenantContext, run_id: str) -> dict[str, Any]:
        """Summary of the newest batch plus the id of the batch rows are matched against."""
        self.store.get_run(ctx.tenant_id, run_id)
        status = cls.batch_status_summary(self._newest_batch(ctx, run_id))
        applied = self._latest_batch(ctx, run_id)
        status["applied_batch_id"] = applied.id if applied is not None else None
        return status

    def export_payees(self, ctx: TenantContext, run_id: str) -> str:
        """CSV of payee identifiers to send to the classification tool."""
        rows = self.store.list_staged_rows(ctx.tenant_id, run_id)
        return cls.render_payee_csv(cls.export_payee_identifiers(rows))

    # ------------------------------------------------------------ validation
    def _verdict(self, ctx: TenantContext, run: Run) -> ValidationVerdict:
        # 呼び出し側が run のロックを保持していること
        rows = self.store.list_staged_rows(ctx.tenant_id, run.id)
        batch = self._gate_batch(ctx, run.id)
        results = self.store.get_classification_results(ctx.tenant_id, batch.id) if batch else []
        staged_hash, current_hash = self._staging_hashes(ctx, run)
        settings = self.config.validation
        return compute_verdict(run.id, rows, batch, results, issue_limit=settings.issue_limit,
                               data_quality_checks=settings.data_quality_checks,
                               current_input_hash=current_hash, staged_input_hash=staged_hash)

    def get_validation_verdict(self, ctx: TenantContext, run_id: str) -> ValidationVerdict:
        """Compute the verdict from the current rows (no side effects)."""
        with self._lock_for(run_id):
            run = self.store.get_run(ctx.tenant_id, run_id)
            return self._verdict(ctx, run)

    def validate(self, ctx: TenantContext, run_id: str) -> ValidationVerdict:
        """Compute the verdict and record it as the run's validation step."""
        with self._run_step(ctx, run_id) as run:
            verdict = self._verdict(ctx, run)
            execution = self._start(ctx, run, Step.VALIDATE, verdict.batch_id, rows_in=verdict.counts["total_rows"])
            self._finish(execution, ExecutionStatus.SUCCESS, rows_out=verdict.counts["scanned_rows"],
                         stats={"status": verdict.status.value, **verdict.counts})
            if not verdict.is_blocked:
                self._advance(run, RunStatus.VALIDATED, Step.VALIDATE)
        self._audit(ctx, run_id, "validate", status=verdict.status.value, blockers=verdict.counts["blockers"])
        return verdict

    def get_staged_rows(self, ctx: TenantContext, run_id: str, *, exclude_excluded: bool = False
                        ) -> list[StagedRow]:
        rows = self.store.list_staged_rows(ctx.tenant_id, run_id)
        if exclude_excluded:
            rows = [r for r in rows if not r.excluded]
        return rows

    # ---------------------------------------------------------------- report
    def generate_report(self, ctx: TenantContext, run_id: str,
                        builder: Callable[[Run, list[dict[str, Any]]], T]) -> T:
        """Hand the non-excluded effective rows to ``builder`` if the gate allows it.

        The verdict and the rows handed to ``builder`` are read under the
        same hold of the run's lock.

        Raises:
            ReportBlockedError: the verdict is ``blocked`` (builder is not called)
        """
        with self._run_step(ctx, run_id) as run:
            verdict = self._verdict(ctx, run)
            if verdict.is_blocked:
                raise ReportBlockedError(
                    f"run {run_id} has {verdict.counts['blockers']} blocker(s); report not generated",
                    details={"counts": verdict.counts,
                             "codes": sorted({b.code for b in verdict.blockers})},
                )
            rows = [r.effective() for r in self.get_staged_rows(ctx, run_id, exclude_excluded=True)]
            execution = self._start(ctx, run, Step.REPORT, verdict.batch_id, rows_in=len(rows))
            try:
                report = builder(run, rows)
            except Exception as e:
                self._fail(execution, run_id, e)
                raise
            self._finish(execution, ExecutionStatus.SUCCESS, rows_out=len(rows),
                         stats={"verdict": verdict.status.value})
            self._advance(run, RunStatus.REPORTED, Step.REPORT)
        self._audit(ctx, run_id, "report.generate", rows=len(rows))
        return report

    # ------------------------------------------------------------------- all
    def run_all(
        self,
        ctx: TenantContext,
        run_id: str,
        *,
        reuse: bool = False,
        cancel_event: threading.Event | None = None,
        show_progress: bool = False,
    ) -> tuple[PipelineRunResult, ValidationVerdict]:
        """Stage (with rules and classification cascade) and validate one run."""
        started = time.perf_counter()
        staged = self.stage(ctx, run_id, reuse=reuse, cancel_event=cancel_event, show_progress=show_progress)
        verdict = self.validate(ctx, run_id)
        rows = self.store.list_staged_rows(ctx.tenant_id, run_id)
        result = PipelineRunResult(
            run_id=run_id,
            rows=len(rows),
            excluded_rows=verdict.counts["excluded_rows"],
            error_rows=sum(1 for r in rows if r.all_errors()),
            status=verdict.status.value,
            elapsed_seconds=time.perf_counter() - started,
            steps=(staged,),
        )
        return result, verdict
