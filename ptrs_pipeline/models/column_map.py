from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .canonical import ValueType

"""Column map models.

A column map document is the stored, user-editable configuration that says
how the headers of a run's main dataset land on canonical fields. Documents
are kept as plain dicts (as loaded from YAML / JSON) and parsed into the
frozen ``ColumnMapConfig`` by ``services.mapping_resolver.parse_column_map``.

``ResolvedMapping`` is the output of resolving a config against an actual
header set. It is a pure value: resolving the same inputs twice yields equal
objects with the same ``fingerprint``.
"""

__all__ = [
    "MapLifecycle",
    "FieldMapping",
    "PassthroughColumn",
    "FallbackEntry",
    "ConcatSegment",
    "CustomField",
    "JoinHint",
    "ColumnMapConfig",
    "ColumnMap",
    "ColumnKind",
    "BindingSource",
    "ResolvedColumn",
    "FieldBinding",
    "ResolvedCustomField",
    "ResolvedMapping",
]


class MapLifecycle(Enum):
    ACTIVE = "active"
    RETIRED = "retired"


@dataclass(frozen=True)
class FieldMapping:
    """Explicit header → canonical field mapping."""
    header: str
    field: str
    value_type: ValueType
    format: str | None = None  # 例: 日付書式 "dd/mm/yyyy"


@dataclass(frozen=True)
class PassthroughColumn:
    """Header carried through unchanged into the custom bucket."""
    header: str
    alias: str


@dataclass(frozen=True)
class FallbackEntry:
    """One entry of a fallback chain: an alternative header or a literal default."""
    header: str | None = None
    default: Any = None
    is_default: bool = False

    @property
    def label(self) -> str:
        if self.is_default:
            return f"default:{self.default}"
        return str(self.header)


@dataclass(frozen=True)
class ConcatSegment:
    kind: str  # column | literal
    value: str


@dataclass(frozen=True)
class CustomField:
    """Computed custom field built by concatenating column values and literals."""
    key: str
    segments: tuple[ConcatSegment, ...]


@dataclass(frozen=True)
class JoinHint:
    """Pointer from the main dataset to an auxiliary dataset role."""
    role: str
    main_column: str
    other_column: str


@dataclass(frozen=True)
class ColumnMapConfig:
    mappings: tuple[FieldMapping, ...] = ()
    passthrough: tuple[PassthroughColumn, ...] = ()
    fallbacks: dict[str, tuple[FallbackEntry, ...]] = field(default_factory=dict)
    custom_fields: tuple[CustomField, ...] = ()
    joins: tuple[JoinHint, ...] = ()
    rules: tuple[dict[str, Any], ...] = ()  # 生の rule 定義。rule_engine.parse_rules で検証


@dataclass(frozen=True)
class ColumnMap:
    """Stored column map record. Exactly one live record per run."""
    id: str
    tenant_id: str
    run_id: str
    document: dict[str, Any]
    profile_id: str | None = None
    version: int = 1
    lifecycle: MapLifecycle = MapLifecycle.ACTIVE
    updated_by: str | None = None
    updated_at: datetime | None = None


class ColumnKind(Enum):
    CANONICAL = "canonical"
    PASSTHROUGH = "passthrough"


class BindingSource(Enum):
    COLUMN = "column"
    DEFAULT = "default"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class ResolvedColumn:
    """How one source header is consumed."""
    header: str
    kind: ColumnKind
    target: str  # canonical field name or custom alias
    value_type: ValueType
    format: str | None = None
    via: str = "direct"  # direct | fallback | passthrough | implicit


@dataclass(frozen=True)
class FieldBinding:
    """Where the value of a canonical field comes from."""
    field: str
    source: BindingSource
    header: str | None = None
    default: Any = None
    label: str | None = None
    value_type: ValueType = ValueType.STRING
    format: str | None = None


@dataclass(frozen=True)
class ResolvedCustomField:
    key: str
    segments: tuple[ConcatSegment, ...]


@dataclass(frozen=True)
class ResolvedMapping:
    columns: tuple[ResolvedColumn, ...]
    fields: tuple[FieldBinding, ...]
    custom_fields: tuple[ResolvedCustomField, ...] = ()
    joins: tuple[JoinHint, ...] = ()
    unresolved_fields: tuple[str, ...] = ()
    issues: tuple[str, ...] = ()
    fingerprint: str = ""

    def binding(self, field_name: str) -> FieldBinding | None:
        for b in self.fields:
            if b.field == field_name:
                return b
        return None

    def as_dict(self) -> dict[str, Any]:
        """Plain, JSON-safe representation (used for preview output and hashing)."""
        return {
            "columns": [
                {
                    "header": c.header,
                    "kind": c.kind.value,
                    "target": c.target,
                    "type": c.value_type.value,
                    "format": c.format,
                    "via": c.via,
                }
                for c in self.columns
            ],
            "fields": [
                {
                    "field": b.field,
                    "source": b.source.value,
                    "header": b.header,
                    "default": b.default if b.default is None else str(b.default),
                    "label": b.label,
                    "type": b.value_type.value,
                    "format": b.format,
                }
                for b in self.fields
            ],
            "custom_fields": [
                {"key": cf.key, "segments": [{"kind": s.kind, "value": s.value} for s in cf.segments]}
                for cf in self.custom_fields
            ],
            "joins": [
                {"role": j.role, "main_column": j.main_column, "other_column": j.other_column}
                for j in self.joins
            ],
            "unresolved_fields": list(self.unresolved_fields),
            "issues": list(self.issues),
        }
