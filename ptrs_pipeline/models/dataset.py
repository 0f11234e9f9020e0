from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

"""Dataset domain model: one uploaded file attached to a run."""

__all__ = [
    "DatasetStatus",
    "Dataset",
    "MAIN_ROLE",
]

MAIN_ROLE = "main"


class DatasetStatus(Enum):
    """uploaded → (parsed | failed). A parsed dataset is immutable."""
    UPLOADED = "uploaded"
    PARSED = "parsed"
    FAILED = "failed"


@dataclass(frozen=True)
class Dataset:
    id: str
    tenant_id: str
    run_id: str
    role: str  # main | vendor_master | entity_list ...
    file_name: str | None
    storage_ref: str | None  # sha256 of the raw bytes
    row_count: int = 0
    status: DatasetStatus = DatasetStatus.UPLOADED
    meta: dict[str, Any] = field(default_factory=dict)  # headers, sample_rows, error
    created_by: str | None = None
    created_at: datetime | None = None

    @property
    def headers(self) -> list[str]:
        return list(self.meta.get("headers") or [])

    @property
    def is_main(self) -> bool:
        return self.role == MAIN_ROLE
