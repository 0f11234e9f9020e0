from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

"""Run domain model: one reporting submission in progress for one tenant."""

__all__ = [
    "RunStatus",
    "Step",
    "Run",
    "STEP_ORDER",
]


class RunStatus(Enum):
    """Lifecycle of a run.

    State transitions (re-running a step moves the run back to that step):
    draft → mapped → staged → rules_applied → classified → validated → reported
    Any state → retired (cancellation; rows are kept, never hard-deleted).
    """
    DRAFT = "draft"
    MAPPED = "mapped"
    STAGED = "staged"
    RULES_APPLIED = "rules_applied"
    CLASSIFIED = "classified"
    VALIDATED = "validated"
    REPORTED = "reported"
    RETIRED = "retired"


class Step(Enum):
    MAP = "map"
    STAGE = "stage"
    RULES = "rules"
    CLASSIFICATION = "classification"
    VALIDATE = "validate"
    REPORT = "report"


STEP_ORDER: tuple[Step, ...] = (
    Step.MAP,
    Step.STAGE,
    Step.RULES,
    Step.CLASSIFICATION,
    Step.VALIDATE,
    Step.REPORT,
)


@dataclass(frozen=True)
class Run:
    id: str
    tenant_id: str
    profile_id: str | None = None
    status: RunStatus = RunStatus.DRAFT
    current_step: Step | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_retired(self) -> bool:
        return self.status is RunStatus.RETIRED
