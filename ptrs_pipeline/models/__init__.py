"""Domain models for the payment times reporting pipeline.

Plain frozen dataclasses and enums; persistence lives in ``ptrs_pipeline.db``
and behaviour in ``ptrs_pipeline.services``.
"""

from .canonical import CANONICAL_FIELDS, PAYEE_ID_FIELD, CanonicalField, ValueType
from .classification import (
    BatchLifecycle,
    BatchStatus,
    ClassificationBatch,
    ClassificationResult,
    Verdict,
)
from .column_map import ColumnMap, ColumnMapConfig, ResolvedMapping
from .dataset import Dataset, DatasetStatus
from .error_record import ErrorRecord
from .processing_result import ExecutionStatus, StepExecution, StepResult
from .run import Run, RunStatus, Step
from .staged_row import RowAnnotations, RowError, StagedRow
from .validation import Severity, ValidationIssue, ValidationVerdict, VerdictStatus

__all__ = [
    # Catalogue
    "CANONICAL_FIELDS",
    "PAYEE_ID_FIELD",
    "CanonicalField",
    "ValueType",
    # Runs and inputs
    "Run",
    "RunStatus",
    "Step",
    "Dataset",
    "DatasetStatus",
    "ColumnMap",
    "ColumnMapConfig",
    "ResolvedMapping",
    # Rows
    "StagedRow",
    "RowAnnotations",
    "RowError",
    # Classification
    "ClassificationBatch",
    "ClassificationResult",
    "BatchStatus",
    "BatchLifecycle",
    "Verdict",
    # Validation
    "ValidationIssue",
    "ValidationVerdict",
    "VerdictStatus",
    "Severity",
    # Execution
    "ErrorRecord",
    "ExecutionStatus",
    "StepExecution",
    "StepResult",
]
