from __future__ import annotations

"""Exception hierarchy for the reporting pipeline.

Every user-visible failure carries a stable machine-readable ``code`` in
addition to the human-readable message. UI and retry logic key off the code.
"""

__all__ = [
    "PipelineError",
    "ConfigError",
    "MappingConfigError",
    "RuleConfigError",
    "DatasetInputError",
    "DatasetParseError",
    "DatasetReadTimeout",
    "ClassificationFileError",
    "NotFoundError",
    "TenantScopeError",
    "StepCancelled",
    "ReportBlockedError",
    "RunStateError",
]


class PipelineError(Exception):
    """Base class. ``retryable`` marks transient failures (timeouts, storage)."""

    code = "PIPELINE_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigError(PipelineError):
    code = "CONFIG_INVALID"


class MappingConfigError(ConfigError):
    code = "MAPPING_CONFIG_INVALID"


class RuleConfigError(ConfigError):
    code = "RULE_CONFIG_INVALID"


class DatasetInputError(PipelineError):
    code = "DATASET_INPUT_INVALID"


class DatasetParseError(PipelineError):
    code = "DATASET_PARSE_FAILED"


class DatasetReadTimeout(PipelineError):
    code = "DATASET_READ_TIMEOUT"
    retryable = True


class ClassificationFileError(PipelineError):
    code = "CLASSIFICATION_FILE_REJECTED"


class NotFoundError(PipelineError):
    code = "NOT_FOUND"


class TenantScopeError(PipelineError):
    code = "TENANT_SCOPE_REQUIRED"


class StepCancelled(PipelineError):
    code = "STEP_CANCELLED"
    retryable = True


class ReportBlockedError(PipelineError):
    code = "REPORT_BLOCKED"


class RunStateError(PipelineError):
    code = "RUN_STATE_INVALID"
