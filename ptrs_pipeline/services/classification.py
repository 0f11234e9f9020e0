from __future__ import annotations

import io
import logging
import re
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from ..datasets.reader import PARSE_ERRORS, content_hash, read_delimited, run_with_timeout
from ..errors import ClassificationFileError, StepCancelled
from ..models.classification import (
    OUTCOME_NOT_SMALL,
    OUTCOME_SMALL,
    BatchStatus,
    ClassificationBatch,
    ClassificationResult,
    Verdict,
)
from ..models.staged_row import StagedRow
from .mapping_resolver import header_key
from .values import is_blank, is_probably_abn, normalize_abn

"""Classification import and matching.

The external small business classification tool returns a delimited file of
(identifier, outcome[, year]). Importing it:

1. parses the file (header names are matched tolerantly, see ``*_HEADERS``)
2. normalises identifiers to digits; anything that is not 11 digits, or whose
   outcome says the ABN was not recognised, is kept with ``is_valid_abn=False``
3. keeps unrecognised outcome text verbatim with ``Verdict.UNRECOGNIZED``
4. when an identifier appears more than once the last row wins

Matching stamps every non-excluded staged row whose normalised payee id
equals a result identifier with the small business verdict, the batch id
(evidence reference) and the outcome text.
"""

__all__ = [
    "ABN_HEADERS",
    "OUTCOME_HEADERS",
    "YEAR_HEADERS",
    "ParsedClassification",
    "MatchSummary",
    "classify_outcome",
    "parse_classification_file",
    "unknown_outcome_rows",
    "batch_status",
    "match_rows",
    "export_payee_identifiers",
    "render_payee_csv",
    "batch_status_summary",
]

logger = logging.getLogger(__name__)

ABN_HEADERS = ("abn", "supplier abn", "entity abn", "payee abn", "payee_entity_abn")
OUTCOME_HEADERS = ("outcome", "result", "status")
YEAR_HEADERS = ("year", "reporting year")

_NOT_RECOGNISED = re.compile(r"not recognised as a valid abn", re.IGNORECASE)
_OUTCOMES = {
    header_key(OUTCOME_SMALL): Verdict.SMALL,
    header_key(OUTCOME_NOT_SMALL): Verdict.NOT_SMALL,
}


@dataclass
class ParsedClassification:
    file_hash: str
    raw_row_count: int
    results: list[ClassificationResult]  # batch_id 未設定 ("")
    issues: list[dict[str, Any]] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "rows": self.raw_row_count,
            "results": len(self.results),
            "small": sum(1 for r in self.results if r.verdict is Verdict.SMALL),
            "not_small": sum(1 for r in self.results if r.verdict is Verdict.NOT_SMALL),
            "unrecognized": sum(1 for r in self.results if r.verdict is Verdict.UNRECOGNIZED),
            "invalid_abn": sum(1 for r in self.results if not r.is_valid_abn),
            "missing_abn": sum(1 for i in self.issues if i["code"] == "MISSING_ABN"),
            "duplicates": sum(1 for i in self.issues if i["code"] == "DUPLICATE_ABN"),
        }


@dataclass
class MatchSummary:
    batch_id: str
    matched: int = 0
    unmatched: int = 0
    missing_payee: int = 0
    excluded_skipped: int = 0
    by_verdict: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "missing_payee": self.missing_payee,
            "excluded_skipped": self.excluded_skipped,
            "by_verdict": dict(self.by_verdict),
        }


def classify_outcome(outcome: str) -> Verdict:
    return _OUTCOMES.get(header_key(outcome), Verdict.UNRECOGNIZED)


def _find_column(columns: Sequence[str], candidates: Sequence[str]) -> str | None:
    by_key = {header_key(c): c for c in columns}
    for cand in candidates:
        if cand in by_key:
            return by_key[cand]
    return None


def _parse_year(value: Any) -> int | None:
    text = str(value).strip()
    m = re.match(r"^(\d{4})", text)
    if not m:
        raise ValueError(f"invalid year {text!r}")
    return int(m.group(1))


def parse_classification_file(
    data: bytes,
    file_name: str = "classification.csv",
    *,
    timeout: float | None = 60.0,
    cancel_event: threading.Event | None = None,
    batch_size: int = 1000,
) -> ParsedClassification:
    """Parse a classification results file.

    Raises:
        ClassificationFileError: unreadable file, missing identifier/outcome
            columns, or no usable rows. ``details`` carries the parse summary.
        DatasetReadTimeout: parsing exceeded ``timeout`` seconds
        StepCancelled: ``cancel_event`` was set (checked every ``batch_size`` records)
    """
    try:
        df: pd.DataFrame = run_with_timeout(lambda: read_delimited(data), timeout, f"reading {file_name}")
    except PARSE_ERRORS as e:
        raise ClassificationFileError(f"cannot parse {file_name}: {e}", details={"file_name": file_name}) from e

    columns = [str(c).strip() for c in df.columns]
    abn_col = _find_column(columns, ABN_HEADERS)
    outcome_col = _find_column(columns, OUTCOME_HEADERS)
    year_col = _find_column(columns, YEAR_HEADERS)
    if abn_col is None or outcome_col is None:
        missing = [n for n, c in (("abn", abn_col), ("outcome", outcome_col)) if c is None]
        raise ClassificationFileError(
            f"{file_name}: missing required column(s): {', '.join(missing)}",
            details={"file_name": file_name, "headers": columns, "missing": missing},
        )
    df.columns = columns

    issues: list[dict[str, Any]] = []
    by_id: dict[str, ClassificationResult] = {}
    raw_count = 0
    step = max(1, batch_size)
    for row_no, rec in enumerate(df.to_dict(orient="records"), start=1):
        if (row_no - 1) % step == 0 and cancel_event is not None and cancel_event.is_set():
            raise StepCancelled(f"classification import of {file_name} cancelled at record {row_no}")
        raw_abn, outcome = rec.get(abn_col), rec.get(outcome_col)
        if is_blank(raw_abn) and is_blank(outcome):
            continue
        raw_count += 1
        if is_blank(raw_abn):
            issues.append({"code": "MISSING_ABN", "row": row_no, "message": "identifier is empty"})
            continue
        identifier = normalize_abn(raw_abn)
        outcome_text = "" if is_blank(outcome) else str(outcome).strip()
        if not outcome_text:
            issues.append({"code": "MISSING_OUTCOME", "row": row_no, "identifier": identifier,
                           "message": "outcome is empty"})
        verdict = classify_outcome(outcome_text)
        valid = is_probably_abn(identifier) and not _NOT_RECOGNISED.search(outcome_text)
        if verdict is Verdict.UNRECOGNIZED and outcome_text:
            issues.append({"code": "UNKNOWN_OUTCOME", "row": row_no, "identifier": identifier,
                           "message": f"unrecognised outcome {outcome_text!r}"})
        if not valid:
            issues.append({"code": "INVALID_ABN", "row": row_no, "identifier": identifier,
                           "message": f"identifier {raw_abn!r} is not a valid ABN"})
        year = None
        if year_col is not None and not is_blank(rec.get(year_col)):
            try:
                year = _parse_year(rec[year_col])
            except ValueError as e:
                issues.append({"code": "INVALID_YEAR", "row": row_no, "identifier": identifier, "message": str(e)})
        if identifier in by_id:
            issues.append({"code": "DUPLICATE_ABN", "row": row_no, "identifier": identifier,
                           "message": f"identifier repeated; row {row_no} replaces row {by_id[identifier].row_no}"})
        by_id[identifier] = ClassificationResult(
            batch_id="",
            identifier=identifier,
            outcome=outcome_text,
            verdict=verdict,
            is_valid_abn=valid,
            year=year,
            row_no=row_no,
        )

    if not by_id:
        raise ClassificationFileError(
            f"{file_name}: no classification rows",
            details={"file_name": file_name, "rows": raw_count, "issues": issues[:20]},
        )
    results = [by_id[k] for k in sorted(by_id)]
    return ParsedClassification(file_hash=content_hash(data), raw_row_count=raw_count, results=results,
                                issues=issues)


def unknown_outcome_rows(rows: Sequence[StagedRow], results: Sequence[ClassificationResult]) -> int:
    """Non-excluded rows whose payee matches a result with an unrecognised outcome."""
    unknown = {r.identifier for r in results if r.verdict is Verdict.UNRECOGNIZED}
    if not unknown:
        return 0
    return sum(1 for row in rows if not row.excluded and normalize_abn(row.payee_id) in unknown)


def batch_status(parsed: ParsedClassification, rows: Sequence[StagedRow] = ()) -> BatchStatus:
    """Overall batch status.

    blocked: no result carries a recognised outcome for a valid identifier,
    so nothing in the file can be used, or an unrecognised outcome matches
    one of the run's staged ``rows``. applied_with_warnings: any parse
    issue. applied: clean file.
    """
    usable = any(r.is_valid_abn and r.verdict is not Verdict.UNRECOGNIZED for r in parsed.results)
    if not usable or unknown_outcome_rows(rows, parsed.results):
        return BatchStatus.BLOCKED
    if parsed.issues:
        return BatchStatus.APPLIED_WITH_WARNINGS
    return BatchStatus.APPLIED


def match_rows(
    rows: Sequence[StagedRow],
    batch: ClassificationBatch,
    results: Sequence[ClassificationResult],
) -> MatchSummary:
    """Stamp classification annotations onto matching rows (in place).

    Every row's previous classification annotations are cleared first, so
    rows that no longer match (or are now excluded) carry no stale verdict.
    """
    by_id = {r.identifier: r for r in results}
    summary = MatchSummary(batch_id=batch.id)
    for row in rows:
        ann = row.annotations
        ann.reset_classification()
        if ann.excluded:
            summary.excluded_skipped += 1
            continue
        payee = normalize_abn(row.payee_id)
        if not payee:
            summary.missing_payee += 1
            continue
        result = by_id.get(payee)
        if result is None:
            summary.unmatched += 1
            continue
        ann.is_small_business = result.expected_small_business
        ann.evidence_batch_id = batch.id
        ann.classification_outcome = result.outcome
        summary.matched += 1
        summary.by_verdict[result.verdict.value] = summary.by_verdict.get(result.verdict.value, 0) + 1
    logger.debug(f"matched {summary.matched} row(s) against batch {batch.id}")
    return summary


def export_payee_identifiers(rows: Sequence[StagedRow]) -> list[str]:
    """Sorted, de-duplicated well-formed payee identifiers of non-excluded rows."""
    ids = {normalize_abn(r.payee_id) for r in rows if not r.excluded}
    return sorted(i for i in ids if is_probably_abn(i))


def render_payee_csv(identifiers: Sequence[str]) -> str:
    """One-column ``ABN`` CSV, the input format of the classification tool."""
    buf = io.StringIO()
    pd.DataFrame({"ABN": list(identifiers)}, dtype=str).to_csv(buf, index=False, lineterminator="\n")
    return buf.getvalue()


def batch_status_summary(batch: ClassificationBatch | None) -> dict[str, Any]:
    if batch is None:
        return {"status": None, "batch_id": None}
    return {
        "status": batch.status.value,
        "batch_id": batch.id,
        "lifecycle": batch.lifecycle.value,
        "file_name": batch.file_name,
        "file_hash": batch.file_hash,
        "rows": batch.raw_row_count,
        "results": batch.parsed_count,
        "summary": dict(batch.summary),
        "issues": list(batch.issues),
        "created_at": batch.created_at.isoformat() if batch.created_at else None,
    }
