from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

"""Validation gate output models."""

__all__ = [
    "Severity",
    "VerdictStatus",
    "ValidationIssue",
    "ValidationVerdict",
]


class Severity(Enum):
    BLOCKER = "blocker"
    WARNING = "warning"


class VerdictStatus(Enum):
    BLOCKED = "blocked"
    PASSED_WITH_WARNINGS = "passed_with_warnings"
    PASSED = "passed"


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    severity: Severity
    message: str
    row_no: int | None = None
    payee_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "severity": self.severity.value, "message": self.message}
        if self.row_no is not None:
            out["row_no"] = self.row_no
        if self.payee_id is not None:
            out["payee_id"] = self.payee_id
        if self.details:
            out["details"] = dict(self.details)
        return out


@dataclass(frozen=True)
class ValidationVerdict:
    """Verdict for one run.

    ``blockers`` / ``warnings`` are itemised up to the issue limit. ``counts``
    always holds the true totals:
        total_rows, excluded_rows, scanned_rows, blockers, warnings,
        by_code {code: n}, truncated_blockers, truncated_warnings
    """
    run_id: str
    status: VerdictStatus
    blockers: tuple[ValidationIssue, ...]
    warnings: tuple[ValidationIssue, ...]
    counts: dict[str, Any]
    batch_id: str | None = None

    @property
    def is_blocked(self) -> bool:
        return self.status is VerdictStatus.BLOCKED

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "batch_id": self.batch_id,
            "blockers": [i.to_dict() for i in self.blockers],
            "warnings": [i.to_dict() for i in self.warnings],
            "counts": self.counts,
        }
