from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

"""Step execution records and batch timing statistics.

Every pipeline step run against a run is recorded as a ``StepExecution``
(step name, hash of its inputs, status, row counts, stats). The staging step
reuses its previous result when the input hash is unchanged and the caller
asks for it.
"""

__all__ = [
    "ExecutionStatus",
    "StepExecution",
    "StepResult",
    "BatchStatsAccumulator",
    "PipelineRunResult",
]


class ExecutionStatus(Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StepExecution:
    id: str
    tenant_id: str
    run_id: str
    step: str  # Step.value
    input_hash: str | None
    status: ExecutionStatus
    rows_in: int = 0
    rows_out: int = 0
    stats: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_by: str | None = None


@dataclass(frozen=True)
class StepResult:
    """Outcome returned to callers of a pipeline step."""
    step: str
    run_id: str
    rows_in: int
    rows_out: int
    elapsed_seconds: float
    input_hash: str | None = None
    reused: bool = False
    error_rows: int = 0
    excluded_rows: int = 0
    stats: dict[str, Any] = field(default_factory=dict)
    # バッチ計測
    total_batches: int = 0
    avg_batch_seconds: float = 0.0
    p95_batch_seconds: float = 0.0


class BatchStatsAccumulator:
    """Collects per-batch timings and reports count / average / p95."""

    def __init__(self) -> None:
        self.batch_times: list[float] = []

    def add_batch_time(self, elapsed_seconds: float) -> None:
        self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Return ``(total_batches, avg_batch_seconds, p95_batch_seconds)``."""
        if not self.batch_times:
            return (0, 0.0, 0.0)
        total_batches = len(self.batch_times)
        avg_batch_seconds = statistics.mean(self.batch_times)
        if total_batches == 1:
            p95_batch_seconds = self.batch_times[0]
        else:
            p95_batch_seconds = statistics.quantiles(
                self.batch_times, n=20, method='inclusive'
            )[18]
        return (total_batches, avg_batch_seconds, p95_batch_seconds)


@dataclass(frozen=True)
class PipelineRunResult:
    """Aggregated result of running every step for one run (CLI summary)."""
    run_id: str
    rows: int
    excluded_rows: int
    error_rows: int
    status: str  # VerdictStatus.value
    elapsed_seconds: float
    steps: tuple[StepResult, ...] = ()
