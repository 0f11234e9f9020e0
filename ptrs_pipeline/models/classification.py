from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

"""Classification batch and result models.

The external small business classification tool returns one outcome per
identifier. Two outcome phrases are recognised; anything else is kept verbatim
and flagged as unrecognised.
"""

__all__ = [
    "OUTCOME_SMALL",
    "OUTCOME_NOT_SMALL",
    "BatchStatus",
    "BatchLifecycle",
    "Verdict",
    "ClassificationBatch",
    "ClassificationResult",
    "ACCEPTABLE_STATUSES",
]

OUTCOME_SMALL = "Small business for payment times reporting"
OUTCOME_NOT_SMALL = "Not a small business for payment times reporting"


class BatchStatus(Enum):
    APPLIED = "applied"
    APPLIED_WITH_WARNINGS = "applied_with_warnings"
    BLOCKED = "blocked"


ACCEPTABLE_STATUSES = frozenset({BatchStatus.APPLIED, BatchStatus.APPLIED_WITH_WARNINGS})


class BatchLifecycle(Enum):
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    RETIRED = "retired"


class Verdict(Enum):
    SMALL = "small"
    NOT_SMALL = "not_small"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class ClassificationBatch:
    id: str
    tenant_id: str
    run_id: str
    file_name: str | None
    file_hash: str
    sequence: int  # run 内で単調増加。latest 判定に使用
    raw_row_count: int = 0
    parsed_count: int = 0
    status: BatchStatus = BatchStatus.APPLIED
    lifecycle: BatchLifecycle = BatchLifecycle.ACTIVE
    summary: dict[str, Any] = field(default_factory=dict)
    issues: tuple[dict[str, Any], ...] = ()
    created_by: str | None = None
    created_at: datetime | None = None

    @property
    def is_acceptable(self) -> bool:
        return self.status in ACCEPTABLE_STATUSES


@dataclass(frozen=True)
class ClassificationResult:
    batch_id: str
    identifier: str  # 数字のみに正規化済み
    outcome: str  # 外部ツールの文言そのまま
    verdict: Verdict
    is_valid_abn: bool
    year: int | None = None
    row_no: int | None = None

    @property
    def expected_small_business(self) -> bool | None:
        if self.verdict is Verdict.SMALL:
            return True
        if self.verdict is Verdict.NOT_SMALL:
            return False
        return None
