from __future__ import annotations

from datetime import date
from decimal import Decimal

from sample_data import LARGE_ABN, NOT_SMALL_OUTCOME, OTHER_ABN, PAYER_ABN, SMALL_ABN, SMALL_OUTCOME

from ptrs_pipeline.models.canonical import CANONICAL_FIELDS
from ptrs_pipeline.models.classification import BatchStatus, ClassificationBatch, ClassificationResult, Verdict
from ptrs_pipeline.models.staged_row import StagedRow
from ptrs_pipeline.models.validation import VerdictStatus
from ptrs_pipeline.services.classification import match_rows
from ptrs_pipeline.services.validation_gate import (
    CLASSIFICATION_BATCH_BLOCKED,
    CLASSIFICATION_REQUIRED,
    STAGING_REQUIRED,
    STAGING_STALE,
    compute_verdict,
)

BATCH = ClassificationBatch(id="b2", tenant_id="t1", run_id="r1", file_name="c.csv", file_hash="h", sequence=2)
RESULTS = [
    ClassificationResult(batch_id="b2", identifier=SMALL_ABN, outcome=SMALL_OUTCOME, verdict=Verdict.SMALL,
                         is_valid_abn=True),
    ClassificationResult(batch_id="b2", identifier=LARGE_ABN, outcome=NOT_SMALL_OUTCOME,
                         verdict=Verdict.NOT_SMALL, is_valid_abn=True),
    ClassificationResult(batch_id="b2", identifier="44444444444", outcome="Pending", verdict=Verdict.UNRECOGNIZED,
                         is_valid_abn=True),
    ClassificationResult(batch_id="b2", identifier="55555555555", outcome="not recognised as a valid ABN",
                         verdict=Verdict.UNRECOGNIZED, is_valid_abn=False),
]


def _row(row_no: int, payee, amount="100", **values) -> StagedRow:
    standard = {name: None for name in CANONICAL_FIELDS}
    standard.update(payee_entity_abn=payee, payment_amount=Decimal(amount), payer_entity_abn=PAYER_ABN,
                    payment_date=date(2024, 7, 15), invoice_reference_number=f"INV-{row_no}")
    standard.update(values)
    return StagedRow(tenant_id="t1", run_id="r1", row_no=row_no, standard=standard)


def _codes(issues):
    return [(i.code, i.row_no) for i in issues]


def test_no_batch_blocks_without_scanning():
    verdict = compute_verdict("r1", [_row(1, SMALL_ABN)], None, [])
    assert verdict.status is VerdictStatus.BLOCKED
    assert _codes(verdict.blockers) == [(CLASSIFICATION_REQUIRED, None)]
    assert verdict.counts["scanned_rows"] == 0


def test_blocked_latest_batch_blocks_even_if_rows_look_fine():
    blocked = ClassificationBatch(id="b3", tenant_id="t1", run_id="r1", file_name="c.csv", file_hash="h3",
                                  sequence=3, status=BatchStatus.BLOCKED)
    rows = [_row(1, SMALL_ABN)]
    match_rows(rows, BATCH, RESULTS)
    verdict = compute_verdict("r1", rows, blocked, [])
    assert _codes(verdict.blockers) == [(CLASSIFICATION_BATCH_BLOCKED, None)]
    assert verdict.batch_id == "b3"


def test_matched_rows_pass():
    rows = [_row(1, SMALL_ABN), _row(2, LARGE_ABN)]
    match_rows(rows, BATCH, RESULTS)
    verdict = compute_verdict("r1", rows, BATCH, RESULTS)
    assert verdict.status is VerdictStatus.PASSED
    assert verdict.counts["scanned_rows"] == 2


def test_excluded_credit_row_is_not_scanned():
    rows = [_row(1, SMALL_ABN, "1200"), _row(2, SMALL_ABN, "-120")]
    rows[1].annotations.exclude("drop-credits", "credit note")
    match_rows(rows, BATCH, RESULTS)
    verdict = compute_verdict("r1", rows, BATCH, RESULTS)
    assert verdict.status is VerdictStatus.PASSED
    assert verdict.counts["excluded_rows"] == 1
    assert verdict.counts["scanned_rows"] == 1


def test_row_chain_first_finding_wins():
    rows = [
        _row(1, None),
        _row(2, "1234"),
        _row(3, "55555555555"),
        _row(4, OTHER_ABN),
        _row(5, "44444444444"),
        _row(6, SMALL_ABN),
        _row(7, LARGE_ABN),
    ]
    match_rows(rows, BATCH, RESULTS)
    rows[5].annotations.evidence_batch_id = "b1"  # classified with an older batch
    rows[6].annotations.is_small_business = True  # flipped by hand
    verdict = compute_verdict("r1", rows, BATCH, RESULTS)
    assert _codes(verdict.blockers) == [
        ("PAYEE_ID_MISSING", 1),
        ("PAYEE_ID_INVALID", 2),
        ("CLASSIFICATION_INVALID_ID", 3),
        ("CLASSIFICATION_UNKNOWN_OUTCOME", 5),
        ("CLASSIFICATION_EVIDENCE_STALE", 6),
        ("CLASSIFICATION_FLAG_MISMATCH", 7),
    ]
    assert _codes(verdict.warnings) == [("CLASSIFICATION_NO_MATCH", 4)]
    assert verdict.status is VerdictStatus.BLOCKED


def test_warnings_only_passes_with_warnings():
    rows = [_row(1, SMALL_ABN), _row(2, OTHER_ABN)]
    match_rows(rows, BATCH, RESULTS)
    verdict = compute_verdict("r1", rows, BATCH, RESULTS)
    assert verdict.status is VerdictStatus.PASSED_WITH_WARNINGS


def test_issue_lists_are_capped_but_counts_are_true():
    rows = [_row(i, None) for i in range(1, 26)]
    verdict = compute_verdict("r1", rows, BATCH, RESULTS, issue_limit=10)
    assert len(verdict.blockers) == 10
    assert verdict.counts["blockers"] == 25
    assert verdict.counts["truncated_blockers"] == 15
    assert verdict.counts["by_code"] == {"PAYEE_ID_MISSING": 25}


def test_data_quality_checks_are_opt_in():
    rows = [
        _row(1, SMALL_ABN, payer_entity_abn=None, invoice_issue_date=date(2024, 8, 1)),
        _row(2, SMALL_ABN, invoice_reference_number="INV-1"),
    ]
    match_rows(rows, BATCH, RESULTS)
    assert compute_verdict("r1", rows, BATCH, RESULTS).status is VerdictStatus.PASSED
    verdict = compute_verdict("r1", rows, BATCH, RESULTS, data_quality_checks=True)
    assert _codes(verdict.blockers) == [("PAYER_ID_MISSING", 1)]
    assert _codes(verdict.warnings) == [("PAYMENT_BEFORE_INVOICE", 1), ("DUPLICATE_SUSPECTED", 2)]


def test_verdict_is_pure():
    rows = [_row(1, SMALL_ABN)]
    match_rows(rows, BATCH, RESULTS)
    before = rows[0].annotations.to_dict()
    a = compute_verdict("r1", rows, BATCH, RESULTS)
    b = compute_verdict("r1", rows, BATCH, RESULTS)
    assert a.to_dict() == b.to_dict()
    assert rows[0].annotations.to_dict() == before


def test_staging_is_checked_before_classification():
    rows = [_row(1, SMALL_ABN)]
    match_rows(rows, BATCH, RESULTS)
    assert compute_verdict("r1", rows, BATCH, RESULTS, current_input_hash="h1",
                           staged_input_hash="h1").status is VerdictStatus.PASSED

    stale = compute_verdict("r1", rows, BATCH, RESULTS, current_input_hash="h2", staged_input_hash="h1")
    assert _codes(stale.blockers) == [(STAGING_STALE, None)]
    assert stale.blockers[0].details == {"staged_input_hash": "h1", "current_input_hash": "h2"}
    assert stale.counts["scanned_rows"] == 0
    assert stale.batch_id == "b2"

    never = compute_verdict("r1", [], None, [], current_input_hash="h2", staged_input_hash=None)
    assert _codes(never.blockers) == [(STAGING_REQUIRED, None)]
    assert never.batch_id is None
