from __future__ import annotations

import threading
from decimal import Decimal

import pytest
from sample_data import (
    CLASSIFICATION_CSV,
    COLUMN_MAP,
    LARGE_ABN,
    MAIN_CSV,
    NOT_SMALL_OUTCOME,
    PAYER_ABN,
    SMALL_ABN,
    SMALL_OUTCOME,
)

from ptrs_pipeline.errors import (
    ClassificationFileError,
    DatasetInputError,
    DatasetParseError,
    MappingConfigError,
    NotFoundError,
    ReportBlockedError,
    RuleConfigError,
    RunStateError,
    StepCancelled,
    TenantScopeError,
)
from ptrs_pipeline.models.classification import BatchLifecycle, BatchStatus
from ptrs_pipeline.models.dataset import DatasetStatus
from ptrs_pipeline.models.processing_result import ExecutionStatus
from ptrs_pipeline.models.run import RunStatus, Step
from ptrs_pipeline.models.validation import VerdictStatus
from ptrs_pipeline.services import classification as classification_module
from ptrs_pipeline.services import pipeline as pipeline_module
from ptrs_pipeline.tenancy import TenantContext


def test_create_run_records_audit_event(service, ctx, audit):
    run = service.create_run(ctx, meta={"label": "FY24 H1"})
    assert run.status is RunStatus.DRAFT
    assert run.created_by == "alice"
    assert [(e.action, e.actor, e.run) for e in audit.events] == [("run.create", "alice", run.id)]


def test_unknown_profile_is_rejected(service, ctx):
    with pytest.raises(NotFoundError):
        service.create_run(ctx, profile_id="missing")


def test_tenant_scope_is_enforced(service, ctx, staged_run):
    with pytest.raises(TenantScopeError):
        TenantContext(tenant_id=" ")
    other = TenantContext(tenant_id="t2", actor_id="bob")
    with pytest.raises(NotFoundError):
        service.get_staged_rows(other, staged_run)
    with pytest.raises(NotFoundError):
        service.get_validation_verdict(other, staged_run)


def test_register_dataset_keeps_headers_and_sample(service, ctx, store):
    run = service.create_run(ctx)
    ds = service.register_dataset(ctx, run.id, file_name="payments.csv", data=MAIN_CSV.encode("utf-8"))
    assert ds.status is DatasetStatus.PARSED
    assert ds.row_count == 3
    assert ds.headers[:2] == ["Supplier Name", "Supplier ABN"]
    assert ds.meta["sample_rows"][0]["Invoice No"] == "INV-1"
    assert len(store.get_dataset_rows("t1", ds.id)) == 3


def test_unparseable_dataset_is_recorded_as_failed(service, ctx, store, error_log):
    run = service.create_run(ctx)
    with pytest.raises(DatasetParseError) as exc:
        service.register_dataset(ctx, run.id, file_name="broken.xlsx", data=b"not a workbook")
    failed = store.get_dataset("t1", exc.value.details["dataset_id"])
    assert failed.status is DatasetStatus.FAILED
    assert failed.meta["error"]
    # staging refuses a failed main dataset
    with pytest.raises(DatasetParseError):
        service.stage(ctx, run.id)


def test_register_rows_from_caller(service, ctx):
    run = service.create_run(ctx)
    ds = service.register_dataset(ctx, run.id, role="vendor_master", rows=[{"Code": "V1", "Category": "IT"}])
    assert ds.headers == ["Code", "Category"]
    with pytest.raises(DatasetInputError) as exc:
        service.register_dataset(ctx, run.id, rows=[], data=b"x")
    assert exc.value.code == "DATASET_INPUT_INVALID"
    with pytest.raises(DatasetInputError):
        service.register_dataset(ctx, run.id, role="vendor_master")


def test_save_column_map_validates_and_versions(service, ctx, store):
    run = service.create_run(ctx)
    with pytest.raises(MappingConfigError):
        service.save_column_map(ctx, run.id, {"mappings": {"A": "no_such_field"}})
    with pytest.raises(MappingConfigError):
        service.save_column_map(ctx, run.id, {"mappings": {"A": 5}})
    first = service.save_column_map(ctx, run.id, COLUMN_MAP)
    second = service.save_column_map(ctx, run.id, {"mappings": {"Amount Paid": "payment_amount"}})
    assert (first.version, second.version) == (1, 2)
    assert second.id == first.id
    assert store.get_column_map("t1", run.id).document == {"mappings": {"Amount Paid": "payment_amount"}}
    assert service.get_run(ctx, run.id).status is RunStatus.MAPPED


def test_preview_mapping_has_no_side_effects(service, ctx, store):
    run = service.create_run(ctx)
    service.register_dataset(ctx, run.id, file_name="payments.csv", data=MAIN_CSV.encode("utf-8"))
    resolved = service.preview_mapping(ctx, run.id, COLUMN_MAP)
    assert resolved.binding("payment_amount").header == "Amount Paid"
    assert store.get_column_map("t1", run.id) is None


def test_stage_cascades_rules_and_records_execution(service, ctx, store, staged_run):
    rows = service.get_staged_rows(ctx, staged_run)
    assert [r.row_no for r in rows] == [1, 2, 3]
    assert rows[0].standard["payment_amount"] == Decimal("1200.00")
    assert rows[2].excluded and rows[2].annotations.excluded_by == "drop-credits"
    assert [r.row_no for r in service.get_staged_rows(ctx, staged_run, exclude_excluded=True)] == [1, 2]
    executions = store.list_executions("t1", staged_run, Step.STAGE.value)
    assert [e.status for e in executions] == [ExecutionStatus.SUCCESS]
    assert executions[0].input_hash
    assert service.get_run(ctx, staged_run).status is RunStatus.RULES_APPLIED


def test_stage_reuse_skips_unchanged_inputs(service, ctx, staged_run):
    again = service.stage(ctx, staged_run, reuse=True)
    assert again.reused
    fresh = service.stage(ctx, staged_run)
    assert not fresh.reused and fresh.input_hash == again.input_hash


def test_cancelled_stage_keeps_previous_rows(service, ctx, store, staged_run):
    before = service.get_staged_rows(ctx, staged_run)
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(StepCancelled):
        service.stage(ctx, staged_run, cancel_event=cancel)
    after = service.get_staged_rows(ctx, staged_run)
    assert [r.standard for r in after] == [r.standard for r in before]
    last = store.list_executions("t1", staged_run, Step.STAGE.value)[-1]
    assert last.status is ExecutionStatus.CANCELLED


def test_invalid_rules_leave_annotations_untouched(service, ctx, staged_run):
    before = [r.annotations.to_dict() for r in service.get_staged_rows(ctx, staged_run)]
    service.save_column_map(ctx, staged_run, {**COLUMN_MAP, "rules": [{"kind": "filter"}]})
    with pytest.raises(RuleConfigError):
        service.apply_rules(ctx, staged_run)
    assert [r.annotations.to_dict() for r in service.get_staged_rows(ctx, staged_run)] == before


def test_preview_rules_does_not_persist(service, ctx, staged_run):
    out = service.preview_rules(ctx, staged_run, [{"id": "big", "kind": "filter", "where": "payment_amount > 1000"}])
    assert out.excluded_rows == 1
    rows = service.get_staged_rows(ctx, staged_run)
    assert not rows[0].excluded


def test_gate_requires_classification(service, ctx, staged_run):
    verdict = service.get_validation_verdict(ctx, staged_run)
    assert verdict.is_blocked
    assert [b.code for b in verdict.blockers] == ["CLASSIFICATION_REQUIRED"]
    with pytest.raises(ReportBlockedError):
        service.generate_report(ctx, staged_run, lambda run, rows: rows)


def test_import_classification_then_report(service, ctx, staged_run):
    imported = service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    assert imported.created and imported.batch.status is BatchStatus.APPLIED
    assert imported.match.matched == 2
    verdict = service.get_validation_verdict(ctx, staged_run)
    assert verdict.status is VerdictStatus.PASSED
    assert verdict.counts["excluded_rows"] == 1

    report = service.generate_report(ctx, staged_run, lambda run, rows: [r["invoice_reference_number"] for r in rows])
    assert report == ["INV-1", "INV-2"]
    assert service.get_run(ctx, staged_run).status is RunStatus.REPORTED


def test_same_file_is_a_noop_new_file_supersedes(service, ctx, store, staged_run):
    first = service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    again = service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    assert not again.created and again.batch.id == first.batch.id
    changed = CLASSIFICATION_CSV + "33102417032,Pending,2024\n"
    second = service.import_classification(ctx, staged_run, changed.encode("utf-8"))
    batches = store.list_classification_batches("t1", staged_run)
    assert [(b.sequence, b.lifecycle) for b in batches] == [(1, BatchLifecycle.SUPERSEDED), (2, BatchLifecycle.ACTIVE)]
    assert second.batch.status is BatchStatus.APPLIED_WITH_WARNINGS
    assert service.classification_status(ctx, staged_run)["batch_id"] == second.batch.id


def test_unapplied_batch_makes_evidence_stale(service, ctx, staged_run):
    service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    flipped = f"ABN,Outcome\n{SMALL_ABN},{NOT_SMALL_OUTCOME}\n{LARGE_ABN},{NOT_SMALL_OUTCOME}\n"
    service.import_classification(ctx, staged_run, flipped.encode("utf-8"), apply=False)
    verdict = service.get_validation_verdict(ctx, staged_run)
    assert {b.code for b in verdict.blockers} == {"CLASSIFICATION_EVIDENCE_STALE"}
    service.apply_classification(ctx, staged_run)
    assert service.get_validation_verdict(ctx, staged_run).status is VerdictStatus.PASSED
    rows = service.get_staged_rows(ctx, staged_run, exclude_excluded=True)
    assert [r.annotations.is_small_business for r in rows] == [False, False]


def test_blocked_reimport_keeps_previous_batch_in_force(service, ctx, store, staged_run):
    first = service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    bad = service.import_classification(ctx, staged_run, f"ABN,Outcome\n{SMALL_ABN},???\n".encode())
    assert bad.batch.status is BatchStatus.BLOCKED and bad.match is None
    assert bad.batch.summary["unknown_outcome_rows"] == 1
    batches = store.list_classification_batches("t1", staged_run)
    assert [(b.id, b.lifecycle) for b in batches] == [
        (first.batch.id, BatchLifecycle.ACTIVE), (bad.batch.id, BatchLifecycle.ACTIVE),
    ]
    verdict = service.get_validation_verdict(ctx, staged_run)
    assert verdict.status is VerdictStatus.PASSED
    assert verdict.batch_id == first.batch.id
    status = service.classification_status(ctx, staged_run)
    assert (status["batch_id"], status["applied_batch_id"]) == (bad.batch.id, first.batch.id)


def test_unusable_reimport_does_not_block_a_good_run(service, ctx, staged_run):
    first = service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    bad = service.import_classification(ctx, staged_run, f"ABN,Outcome\n123,{SMALL_OUTCOME}\n".encode())
    assert bad.batch.status is BatchStatus.BLOCKED
    verdict = service.get_validation_verdict(ctx, staged_run)
    assert verdict.status is VerdictStatus.PASSED and verdict.batch_id == first.batch.id
    report = service.generate_report(ctx, staged_run, lambda run, rows: [r["invoice_reference_number"] for r in rows])
    assert report == ["INV-1", "INV-2"]


def test_only_blocked_batch_blocks_gate(service, ctx, staged_run):
    bad = service.import_classification(ctx, staged_run, f"ABN,Outcome\n{SMALL_ABN},???\n".encode())
    assert bad.batch.status is BatchStatus.BLOCKED
    verdict = service.get_validation_verdict(ctx, staged_run)
    assert [b.code for b in verdict.blockers] == ["CLASSIFICATION_BATCH_BLOCKED"]
    assert verdict.counts["scanned_rows"] == 0
    assert verdict.batch_id == bad.batch.id
    assert service.get_run(ctx, staged_run).status is RunStatus.RULES_APPLIED
    with pytest.raises(RunStateError):
        service.apply_classification(ctx, staged_run)


def test_unknown_outcome_for_staged_payee_blocks_the_batch(service, ctx, staged_run):
    first = service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    mixed = f"ABN,Outcome\n{SMALL_ABN},Pending\n{LARGE_ABN},{SMALL_OUTCOME}\n"
    second = service.import_classification(ctx, staged_run, mixed.encode("utf-8"))
    assert second.batch.status is BatchStatus.BLOCKED
    assert second.batch.summary["unknown_outcome_rows"] == 1
    rows = service.get_staged_rows(ctx, staged_run, exclude_excluded=True)
    # 行は前回の batch の判定のまま
    assert [(r.annotations.is_small_business, r.annotations.evidence_batch_id) for r in rows] == [
        (True, first.batch.id), (False, first.batch.id),
    ]
    verdict = service.get_validation_verdict(ctx, staged_run)
    assert verdict.status is VerdictStatus.PASSED and verdict.batch_id == first.batch.id


def test_rejected_classification_file_stores_nothing(service, ctx, store, staged_run):
    with pytest.raises(ClassificationFileError):
        service.import_classification(ctx, staged_run, b"Name,Outcome\nx,y\n")
    assert store.list_classification_batches("t1", staged_run) == []


def test_restage_rematches_latest_batch(service, ctx, staged_run):
    service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    service.stage(ctx, staged_run)
    assert service.get_validation_verdict(ctx, staged_run).status is VerdictStatus.PASSED
    assert service.get_run(ctx, staged_run).status is RunStatus.CLASSIFIED


def test_export_payees(service, ctx, staged_run):
    assert service.export_payees(ctx, staged_run) == f"ABN\n{SMALL_ABN}\n{LARGE_ABN}\n"


def test_retired_run_rejects_mutations(service, ctx, store, staged_run):
    service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    retired = service.retire_run(ctx, staged_run)
    assert retired.status is RunStatus.RETIRED
    assert all(b.lifecycle is BatchLifecycle.RETIRED for b in store.list_classification_batches("t1", staged_run))
    with pytest.raises(RunStateError):
        service.stage(ctx, staged_run)
    # rows are kept for audit
    assert len(service.get_staged_rows(ctx, staged_run)) == 3


def test_concurrent_steps_on_one_run_are_serialised(service, ctx, staged_run):
    errors: list[BaseException] = []

    def work() -> None:
        try:
            service.stage(ctx, staged_run)
            service.apply_rules(ctx, staged_run)
        except BaseException as e:  # pragma: no cover - surfaced below
            errors.append(e)

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    rows = service.get_staged_rows(ctx, staged_run)
    assert [r.excluded for r in rows] == [False, False, True]


NEW_MAIN_CSV = (
    MAIN_CSV.splitlines()[0] + "\n"
    + f"Small Co,{SMALL_ABN},NEW-1,01/08/2024,15/08/2024,500.00,Acme Pty Ltd,{PAYER_ABN},V1\n"
    + f"Large Co,{LARGE_ABN},NEW-2,02/08/2024,20/08/2024,700.00,Acme Pty Ltd,{PAYER_ABN},V2\n"
)


def _codes(verdict):
    return [(b.code, b.row_no) for b in verdict.blockers]


def test_unstaged_run_requires_staging(service, ctx):
    run = service.create_run(ctx)
    assert _codes(service.get_validation_verdict(ctx, run.id)) == [("STAGING_REQUIRED", None)]
    service.register_dataset(ctx, run.id, file_name="payments.csv", data=MAIN_CSV.encode("utf-8"))
    service.save_column_map(ctx, run.id, COLUMN_MAP)
    verdict = service.get_validation_verdict(ctx, run.id)
    assert _codes(verdict) == [("STAGING_REQUIRED", None)]
    assert verdict.counts["scanned_rows"] == 0


def test_remap_after_classification_makes_staging_stale(service, ctx, staged_run):
    service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    assert service.get_validation_verdict(ctx, staged_run).status is VerdictStatus.PASSED

    mappings = {k: v for k, v in COLUMN_MAP["mappings"].items() if k != "Supplier ABN"}
    mappings["Vendor Code"] = "payee_entity_abn"
    service.save_column_map(ctx, staged_run, {**COLUMN_MAP, "mappings": mappings})

    verdict = service.get_validation_verdict(ctx, staged_run)
    assert verdict.is_blocked
    assert _codes(verdict) == [("STAGING_STALE", None)]
    assert verdict.counts["scanned_rows"] == 0
    with pytest.raises(ReportBlockedError) as exc:
        service.generate_report(ctx, staged_run, lambda run, rows: rows)
    assert exc.value.details["codes"] == ["STAGING_STALE"]
    assert service.validate(ctx, staged_run).is_blocked

    # 再ステージング後は新しいマッピングの行で判定される
    service.stage(ctx, staged_run)
    restaged = service.get_validation_verdict(ctx, staged_run)
    assert restaged.is_blocked
    assert "STAGING_STALE" not in {b.code for b in restaged.blockers}
    assert {b.row_no for b in restaged.blockers} == {1, 2}


def test_resaving_the_same_map_keeps_staging_current(service, ctx, staged_run):
    service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    service.save_column_map(ctx, staged_run, COLUMN_MAP)
    assert service.get_validation_verdict(ctx, staged_run).status is VerdictStatus.PASSED


def test_rule_only_change_does_not_require_restaging(service, ctx, staged_run):
    service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    service.save_column_map(ctx, staged_run, {**COLUMN_MAP, "rules": []})
    service.apply_rules(ctx, staged_run)
    verdict = service.get_validation_verdict(ctx, staged_run)
    assert "STAGING_STALE" not in {b.code for b in verdict.blockers}
    assert verdict.counts["excluded_rows"] == 0


def test_new_main_dataset_makes_staging_stale(service, ctx, staged_run):
    service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    service.register_dataset(ctx, staged_run, file_name="payments_v2.csv", data=NEW_MAIN_CSV.encode("utf-8"))

    assert _codes(service.get_validation_verdict(ctx, staged_run)) == [("STAGING_STALE", None)]
    with pytest.raises(ReportBlockedError):
        service.generate_report(ctx, staged_run, lambda run, rows: rows)

    service.stage(ctx, staged_run)
    assert service.get_validation_verdict(ctx, staged_run).status is VerdictStatus.PASSED
    report = service.generate_report(ctx, staged_run, lambda run, rows: [r["invoice_reference_number"] for r in rows])
    assert report == ["NEW-1", "NEW-2"]


def test_failed_new_main_dataset_makes_staging_stale(service, ctx, staged_run):
    service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    with pytest.raises(DatasetParseError):
        service.register_dataset(ctx, staged_run, file_name="broken.xlsx", data=b"not a workbook")
    assert _codes(service.get_validation_verdict(ctx, staged_run)) == [("STAGING_STALE", None)]


def test_verdict_is_computed_under_the_run_lock(service, ctx, staged_run, monkeypatch):
    service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"))
    real = pipeline_module.compute_verdict
    held: list[bool] = []

    def checking(*args, **kwargs):
        lock = service._lock_for(staged_run)
        acquired: list[bool] = []

        def try_lock() -> None:
            ok = lock.acquire(blocking=False)
            if ok:
                lock.release()
            acquired.append(ok)

        t = threading.Thread(target=try_lock)
        t.start()
        t.join()
        held.append(not acquired[0])
        return real(*args, **kwargs)

    monkeypatch.setattr(pipeline_module, "compute_verdict", checking)
    service.validate(ctx, staged_run)
    service.generate_report(ctx, staged_run, lambda run, rows: rows)
    assert held == [True, True]


def test_cancelled_classification_import_stores_no_batch(service, ctx, store, staged_run):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(StepCancelled):
        service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"), cancel_event=cancel)
    assert store.list_classification_batches("t1", staged_run) == []
    last = store.list_executions("t1", staged_run, Step.CLASSIFICATION.value)[-1]
    assert last.status is ExecutionStatus.CANCELLED
    assert [r.annotations.evidence_batch_id for r in service.get_staged_rows(ctx, staged_run)] == [None] * 3


def test_cancel_after_parsing_stores_no_batch(service, ctx, store, staged_run, monkeypatch):
    cancel = threading.Event()
    real = classification_module.parse_classification_file

    def parse_then_cancel(*args, **kwargs):
        parsed = real(*args, **kwargs)
        cancel.set()
        return parsed

    monkeypatch.setattr(classification_module, "parse_classification_file", parse_then_cancel)
    with pytest.raises(StepCancelled):
        service.import_classification(ctx, staged_run, CLASSIFICATION_CSV.encode("utf-8"), cancel_event=cancel)
    assert store.list_classification_batches("t1", staged_run) == []
    assert service.get_run(ctx, staged_run).status is RunStatus.RULES_APPLIED
