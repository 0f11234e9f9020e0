from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from .canonical import PAYEE_ID_FIELD

"""Staged row model.

A staged row is addressed by ``(tenant_id, run_id, row_no)``. ``standard`` and
``custom`` hold the values produced by staging and are never modified after
that; rule and classification results live only in ``annotations``.
"""

__all__ = [
    "RowError",
    "RowAnnotations",
    "StagedRow",
]

_MISSING = object()


@dataclass(frozen=True)
class RowError:
    """Per-row data error recorded by staging or by a cast rule."""
    field: str
    raw_value: str | None
    target_type: str
    code: str  # UPPER_SNAKE
    message: str


@dataclass
class RowAnnotations:
    applied_rules: list[str] = field(default_factory=list)
    excluded: bool = False
    exclude_reason: str | None = None
    excluded_by: str | None = None
    overrides: dict[str, Any] = field(default_factory=dict)
    removed: list[str] = field(default_factory=list)
    rule_errors: list[RowError] = field(default_factory=list)
    # classification
    is_small_business: bool | None = None
    evidence_batch_id: str | None = None
    classification_outcome: str | None = None

    def reset_rules(self) -> None:
        self.applied_rules = []
        self.excluded = False
        self.exclude_reason = None
        self.excluded_by = None
        self.overrides = {}
        self.removed = []
        self.rule_errors = []

    def reset_classification(self) -> None:
        self.is_small_business = None
        self.evidence_batch_id = None
        self.classification_outcome = None

    def exclude(self, rule_id: str, reason: str) -> None:
        self.excluded = True
        self.excluded_by = rule_id
        self.exclude_reason = reason

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RowAnnotations:
        if not data:
            return cls()
        data = dict(data)
        data["rule_errors"] = [RowError(**e) for e in data.get("rule_errors") or []]
        return cls(**data)


@dataclass
class StagedRow:
    tenant_id: str
    run_id: str
    row_no: int  # 1 始まり (ヘッダ行を除くデータ行番号)
    standard: dict[str, Any]
    custom: dict[str, Any] = field(default_factory=dict)
    raw_ref: str | None = None
    errors: list[RowError] = field(default_factory=list)
    missing_fields: list[str] = field(default_factory=list)
    annotations: RowAnnotations = field(default_factory=RowAnnotations)

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.tenant_id, self.run_id, self.row_no)

    @property
    def excluded(self) -> bool:
        return self.annotations.excluded

    def value(self, name: str, default: Any = None) -> Any:
        """Effective value of a field: rule overrides, then standard, then custom."""
        ann = self.annotations
        if name in ann.overrides:
            return ann.overrides[name]
        if name in ann.removed:
            return default
        v = self.standard.get(name, _MISSING)
        if v is _MISSING:
            v = self.custom.get(name, _MISSING)
        return default if v is _MISSING else v

    def has_field(self, name: str) -> bool:
        if name in self.annotations.overrides:
            return True
        if name in self.annotations.removed:
            return False
        return name in self.standard or name in self.custom

    @property
    def payee_id(self) -> Any:
        return self.value(PAYEE_ID_FIELD)

    def effective(self) -> dict[str, Any]:
        """Flat dict of every effective field value (standard, custom, overrides)."""
        merged: dict[str, Any] = {}
        merged.update(self.custom)
        merged.update(self.standard)
        for name in self.annotations.removed:
            merged.pop(name, None)
        merged.update(self.annotations.overrides)
        return merged

    def all_errors(self) -> list[RowError]:
        return [*self.errors, *self.annotations.rule_errors]
