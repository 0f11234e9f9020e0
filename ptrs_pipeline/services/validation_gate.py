from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from ..models.canonical import AMOUNT_FIELD, PAYER_ID_FIELD
from ..models.classification import ClassificationBatch, ClassificationResult, Verdict
from ..models.staged_row import StagedRow
from ..models.validation import Severity, ValidationIssue, ValidationVerdict, VerdictStatus
from .values import is_blank, is_probably_abn, normalize_abn, normalize_amount, parse_date

"""Validation gate.

Computes a verdict for a run from its current staged rows and the latest
acceptable classification batch. Pure: nothing is written, so it can be
evaluated as often as needed and report generation can consult it right
before building.

Preconditions, checked in order. A failed one gives a ``blocked`` verdict
with a single structural blocker and no row is scanned:
    STAGING_REQUIRED / STAGING_STALE   the staged rows were not produced
                                       from the run's current inputs
    CLASSIFICATION_REQUIRED            no classification batch imported
    CLASSIFICATION_BATCH_BLOCKED       no batch with an acceptable status

Row scan (excluded rows are skipped and only counted), first finding wins:
    PAYEE_ID_MISSING               blocker
    PAYEE_ID_INVALID               blocker
    CLASSIFICATION_INVALID_ID      blocker
    CLASSIFICATION_NO_MATCH        warning
    CLASSIFICATION_UNKNOWN_OUTCOME blocker
    CLASSIFICATION_EVIDENCE_STALE  blocker
    CLASSIFICATION_FLAG_MISMATCH   blocker

Optional data quality checks add payer / date / amount blockers and
payment-before-invoice / suspected-duplicate warnings.

Itemised lists are capped at ``issue_limit`` each; ``counts`` always carries
the true totals.
"""

__all__ = [
    "DEFAULT_ISSUE_LIMIT",
    "CLASSIFICATION_REQUIRED",
    "CLASSIFICATION_BATCH_BLOCKED",
    "STAGING_REQUIRED",
    "STAGING_STALE",
    "compute_verdict",
]

DEFAULT_ISSUE_LIMIT = 200

CLASSIFICATION_REQUIRED = "CLASSIFICATION_REQUIRED"
CLASSIFICATION_BATCH_BLOCKED = "CLASSIFICATION_BATCH_BLOCKED"
STAGING_REQUIRED = "STAGING_REQUIRED"
STAGING_STALE = "STAGING_STALE"

_B, _W = Severity.BLOCKER, Severity.WARNING


class _Collector:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.blockers: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []
        self.by_code: Counter[str] = Counter()
        self.total = {_B: 0, _W: 0}

    def add(self, code: str, severity: Severity, message: str, row: StagedRow | None = None,
            payee_id: str | None = None, **details: Any) -> None:
        self.by_code[code] += 1
        self.total[severity] += 1
        bucket = self.blockers if severity is _B else self.warnings
        if len(bucket) < self.limit:
            bucket.append(ValidationIssue(
                code=code,
                severity=severity,
                message=message,
                row_no=row.row_no if row is not None else None,
                payee_id=payee_id,
                details=details,
            ))


def _classification_issue(
    row: StagedRow,
    batch: ClassificationBatch,
    by_id: dict[str, ClassificationResult],
    invalid_ids: set[str],
    out: _Collector,
) -> None:
    raw = row.payee_id
    if is_blank(raw):
        out.add("PAYEE_ID_MISSING", _B, "payee identifier is missing", row)
        return
    payee = normalize_abn(raw)
    if not is_probably_abn(payee):
        out.add("PAYEE_ID_INVALID", _B, f"payee identifier {raw!s} is not an 11 digit ABN", row, payee or str(raw))
        return
    if payee in invalid_ids:
        out.add("CLASSIFICATION_INVALID_ID", _B, "classification marked this identifier as not a valid ABN",
                row, payee)
        return
    result = by_id.get(payee)
    if result is None:
        out.add("CLASSIFICATION_NO_MATCH", _W, "payee not present in the classification results", row, payee)
        return
    if result.verdict is Verdict.UNRECOGNIZED:
        out.add("CLASSIFICATION_UNKNOWN_OUTCOME", _B, f"unrecognised classification outcome {result.outcome!r}",
                row, payee, outcome=result.outcome)
        return
    ann = row.annotations
    if ann.evidence_batch_id != batch.id:
        out.add("CLASSIFICATION_EVIDENCE_STALE", _B, "row was not classified with the latest classification batch",
                row, payee, evidence_batch_id=ann.evidence_batch_id, latest_batch_id=batch.id)
        return
    expected = result.expected_small_business
    if ann.is_small_business is not expected:
        out.add("CLASSIFICATION_FLAG_MISMATCH", _B, "small business flag disagrees with the classification outcome",
                row, payee, stored=ann.is_small_business, expected=expected)


def _data_quality_issues(row: StagedRow, seen: dict[tuple[str, str, str], int], out: _Collector) -> None:
    payer = row.value(PAYER_ID_FIELD)
    if is_blank(payer):
        out.add("PAYER_ID_MISSING", _B, "payer identifier is missing", row)
    elif not is_probably_abn(payer):
        out.add("PAYER_ID_INVALID", _B, f"payer identifier {payer!s} is not an 11 digit ABN", row)

    payment_date = None
    raw_date = row.value("payment_date")
    if is_blank(raw_date):
        out.add("PAYMENT_DATE_MISSING", _B, "payment date is missing", row)
    else:
        try:
            payment_date = parse_date(raw_date)
        except ValueError:
            out.add("PAYMENT_DATE_INVALID", _B, f"payment date {raw_date!s} is not a valid date", row)

    amount: Decimal | None = None
    raw_amount = row.value(AMOUNT_FIELD)
    if is_blank(raw_amount):
        out.add("PAYMENT_AMOUNT_MISSING", _B, "payment amount is missing", row)
    else:
        try:
            amount = normalize_amount(raw_amount)
        except ValueError:
            out.add("PAYMENT_AMOUNT_INVALID", _B, f"payment amount {raw_amount!s} is not a number", row)

    try:
        invoice_date = parse_date(row.value("invoice_issue_date"))
    except ValueError:
        invoice_date = None
    if payment_date is not None and invoice_date is not None and payment_date < invoice_date:
        out.add("PAYMENT_BEFORE_INVOICE", _W, "payment date is before the invoice issue date", row,
                payment_date=payment_date.isoformat(), invoice_issue_date=invoice_date.isoformat())

    invoice_ref = row.value("invoice_reference_number")
    payee = normalize_abn(row.payee_id)
    if payee and not is_blank(invoice_ref) and amount is not None:
        key = (payee, str(invoice_ref).strip().casefold(), str(amount.normalize()))
        first = seen.get(key)
        if first is None:
            seen[key] = row.row_no
        else:
            out.add("DUPLICATE_SUSPECTED", _W, f"same payee, invoice and amount as row {first}", row, payee,
                    duplicate_of=first)


def _counts(out: _Collector, total: int, excluded: int, scanned: int) -> dict[str, Any]:
    return {
        "total_rows": total,
        "excluded_rows": excluded,
        "scanned_rows": scanned,
        "blockers": out.total[_B],
        "warnings": out.total[_W],
        "by_code": dict(sorted(out.by_code.items())),
        "truncated_blockers": out.total[_B] - len(out.blockers),
        "truncated_warnings": out.total[_W] - len(out.warnings),
    }


def compute_verdict(
    run_id: str,
    rows: Sequence[StagedRow],
    latest_batch: ClassificationBatch | None,
    results: Sequence[ClassificationResult],
    *,
    issue_limit: int = DEFAULT_ISSUE_LIMIT,
    data_quality_checks: bool = False,
    current_input_hash: str | None = None,
    staged_input_hash: str | None = None,
) -> ValidationVerdict:
    """Compute the validation verdict for one run.

    Args:
        rows: Current staged rows of the run (annotated by rules / matching)
        latest_batch: The run's latest acceptable classification batch, else
            its newest (blocked) batch, None if never imported
        results: Results of ``latest_batch``
        issue_limit: Maximum itemised blockers (and, separately, warnings)
        data_quality_checks: Also run payer / date / amount / duplicate checks
        current_input_hash: Staging input hash of the run's current datasets
            and column map; None skips the staging check
        staged_input_hash: Input hash of the staging that produced ``rows``,
            None if the run was never staged
    """
    out = _Collector(issue_limit)
    excluded = sum(1 for r in rows if r.excluded)

    def _structural() -> ValidationVerdict:
        return ValidationVerdict(
            run_id=run_id,
            status=VerdictStatus.BLOCKED,
            blockers=tuple(out.blockers),
            warnings=(),
            counts=_counts(out, len(rows), excluded, 0),
            batch_id=latest_batch.id if latest_batch is not None else None,
        )

    if current_input_hash is not None and staged_input_hash != current_input_hash:
        if staged_input_hash is None:
            out.add(STAGING_REQUIRED, _B, "the run has not been staged")
        else:
            out.add(STAGING_STALE, _B, "datasets or column map changed since the run was staged; stage it again",
                    staged_input_hash=staged_input_hash, current_input_hash=current_input_hash)
        return _structural()

    if latest_batch is None or not latest_batch.is_acceptable:
        if latest_batch is None:
            out.add(CLASSIFICATION_REQUIRED, _B, "classification has not been imported for this run")
        else:
            out.add(CLASSIFICATION_BATCH_BLOCKED, _B,
                    f"classification batch {latest_batch.id} is blocked and no earlier batch is usable; "
                    "import a corrected file",
                    batch_id=latest_batch.id)
        return _structural()

    by_id = {r.identifier: r for r in results}
    invalid_ids = {r.identifier for r in results if not r.is_valid_abn}
    seen: dict[tuple[str, str, str], int] = {}
    scanned = 0
    for row in sorted(rows, key=lambda r: r.row_no):
        if row.excluded:
            continue
        scanned += 1
        _classification_issue(row, latest_batch, by_id, invalid_ids, out)
        if data_quality_checks:
            _data_quality_issues(row, seen, out)

    if out.total[_B]:
        status = VerdictStatus.BLOCKED
    elif out.total[_W]:
        status = VerdictStatus.PASSED_WITH_WARNINGS
    else:
        status = VerdictStatus.PASSED
    return ValidationVerdict(
        run_id=run_id,
        status=status,
        blockers=tuple(out.blockers),
        warnings=tuple(out.warnings),
        counts=_counts(out, len(rows), excluded, scanned),
        batch_id=latest_batch.id,
    )
