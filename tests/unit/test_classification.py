from __future__ import annotations

import threading

import pytest
from sample_data import LARGE_ABN, NOT_SMALL_OUTCOME, SMALL_ABN, SMALL_OUTCOME

from ptrs_pipeline.errors import ClassificationFileError, StepCancelled
from ptrs_pipeline.models.canonical import CANONICAL_FIELDS
from ptrs_pipeline.models.classification import BatchStatus, ClassificationBatch, Verdict
from ptrs_pipeline.models.staged_row import StagedRow
from ptrs_pipeline.services.classification import (
    batch_status,
    classify_outcome,
    export_payee_identifiers,
    match_rows,
    parse_classification_file,
    render_payee_csv,
    unknown_outcome_rows,
)


def _row(row_no: int, payee) -> StagedRow:
    standard = {name: None for name in CANONICAL_FIELDS}
    standard["payee_entity_abn"] = payee
    return StagedRow(tenant_id="t1", run_id="r1", row_no=row_no, standard=standard)


def _csv(*lines: str) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


def test_classify_outcome_is_tolerant_but_exact():
    assert classify_outcome("  small BUSINESS for payment times reporting") is Verdict.SMALL
    assert classify_outcome(NOT_SMALL_OUTCOME) is Verdict.NOT_SMALL
    assert classify_outcome("Small-ish") is Verdict.UNRECOGNIZED


def test_parse_clean_file():
    parsed = parse_classification_file(_csv("ABN,Outcome,Year",
                                            f"{SMALL_ABN},{SMALL_OUTCOME},2024",
                                            f"53 004 085 616,{NOT_SMALL_OUTCOME},2024-25"))
    assert [r.identifier for r in parsed.results] == sorted([SMALL_ABN, LARGE_ABN])
    assert parsed.issues == []
    assert {r.year for r in parsed.results} == {2024}
    assert batch_status(parsed) is BatchStatus.APPLIED


def test_parse_records_issues_and_last_duplicate_wins():
    parsed = parse_classification_file(_csv(
        "Supplier ABN;Result",
        f"{SMALL_ABN};{NOT_SMALL_OUTCOME}",
        f"{SMALL_ABN};{SMALL_OUTCOME}",
        f"123;{SMALL_OUTCOME}",
        f"{LARGE_ABN};Pending review",
        f";{SMALL_OUTCOME}",
        f"33102417032;Your ABN is not recognised as a valid ABN",
    ))
    codes = sorted(i["code"] for i in parsed.issues)
    assert codes == ["DUPLICATE_ABN", "INVALID_ABN", "INVALID_ABN", "MISSING_ABN", "UNKNOWN_OUTCOME",
                     "UNKNOWN_OUTCOME"]
    by_id = {r.identifier: r for r in parsed.results}
    assert by_id[SMALL_ABN].verdict is Verdict.SMALL
    assert by_id[LARGE_ABN].outcome == "Pending review"
    assert by_id["33102417032"].is_valid_abn is False
    assert batch_status(parsed) is BatchStatus.APPLIED_WITH_WARNINGS


def test_batch_blocked_when_nothing_is_usable():
    parsed = parse_classification_file(_csv("ABN,Outcome", f"{SMALL_ABN},Unknown", f"12,{SMALL_OUTCOME}"))
    assert batch_status(parsed) is BatchStatus.BLOCKED


@pytest.mark.parametrize(
    "data",
    [
        _csv("Identifier,Outcome", f"{SMALL_ABN},{SMALL_OUTCOME}"),
        _csv("ABN,Outcome", ","),
        b"",
    ],
)
def test_unusable_files_are_rejected(data):
    with pytest.raises(ClassificationFileError):
        parse_classification_file(data, "results.csv")


def test_match_rows_stamps_evidence_and_skips_excluded():
    parsed = parse_classification_file(_csv("ABN,Outcome", f"{SMALL_ABN},{SMALL_OUTCOME}",
                                            f"{LARGE_ABN},{NOT_SMALL_OUTCOME}"))
    batch = ClassificationBatch(id="b1", tenant_id="t1", run_id="r1", file_name="x.csv",
                                file_hash=parsed.file_hash, sequence=1)
    rows = [_row(1, "51 824 753 556"), _row(2, LARGE_ABN), _row(3, "99999999999"), _row(4, None),
            _row(5, SMALL_ABN)]
    rows[4].annotations.exclude("neg", "credit")
    rows[4].annotations.evidence_batch_id = "old"
    summary = match_rows(rows, batch, parsed.results)
    assert (summary.matched, summary.unmatched, summary.missing_payee, summary.excluded_skipped) == (2, 1, 1, 1)
    assert rows[0].annotations.is_small_business is True
    assert rows[0].annotations.evidence_batch_id == "b1"
    assert rows[1].annotations.is_small_business is False
    assert rows[4].annotations.evidence_batch_id is None


def test_payee_export_is_sorted_unique_and_well_formed():
    rows = [_row(1, LARGE_ABN), _row(2, "51 824 753 556"), _row(3, SMALL_ABN), _row(4, "123"), _row(5, None)]
    ids = export_payee_identifiers(rows)
    assert ids == sorted([SMALL_ABN, LARGE_ABN])
    assert render_payee_csv(ids) == f"ABN\n{ids[0]}\n{ids[1]}\n"


def test_unknown_outcome_on_a_staged_payee_blocks_the_batch():
    parsed = parse_classification_file(_csv("ABN,Outcome", f"{SMALL_ABN},Pending",
                                            f"{LARGE_ABN},{NOT_SMALL_OUTCOME}"))
    unrelated = [_row(1, LARGE_ABN)]
    assert batch_status(parsed, unrelated) is BatchStatus.APPLIED_WITH_WARNINGS

    rows = [_row(1, LARGE_ABN), _row(2, "51 824 753 556"), _row(3, SMALL_ABN)]
    rows[2].annotations.exclude("neg", "credit")
    assert unknown_outcome_rows(rows, parsed.results) == 1
    assert batch_status(parsed, rows) is BatchStatus.BLOCKED


def test_parse_honours_cancel_event():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(StepCancelled):
        parse_classification_file(_csv("ABN,Outcome", f"{SMALL_ABN},{SMALL_OUTCOME}"), cancel_event=cancel)
    cancel.clear()
    parsed = parse_classification_file(_csv("ABN,Outcome", f"{SMALL_ABN},{SMALL_OUTCOME}"),
                                       cancel_event=cancel, batch_size=1)
    assert [r.identifier for r in parsed.results] == [SMALL_ABN]
