from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from .canonical import ValueType

"""Rule definitions as a closed tagged union.

Each rule kind has its own frozen dataclass with an explicit payload. Raw
rule documents are parsed into these by ``services.rule_engine.parse_rules``;
anything that does not fit one of the variants is rejected there.

Row rules (evaluated per row, in declared order):
    filter, derive, rename, cast, join_lookup
Cross-row rules (evaluated per group after all row rules settle):
    dedupe, net_reversals, aggregate, adjust
"""

__all__ = [
    "CONDITION_OPS",
    "DERIVE_OPS",
    "AGGREGATE_FUNCS",
    "ADJUST_OPS",
    "Condition",
    "Rule",
    "FilterRule",
    "DeriveRule",
    "RenameRule",
    "CastRule",
    "JoinLookupRule",
    "CrossRowRule",
    "DedupeRule",
    "NetReversalsRule",
    "AggregateRule",
    "AdjustRule",
]

CONDITION_OPS = frozenset({"eq", "neq", "gt", "gte", "lt", "lte", "in", "nin", "is_null", "not_null"})
DERIVE_OPS = frozenset(
    {"value", "copy", "abs", "negate", "concat", "add", "sub", "mul", "div", "coalesce", "days_between"}
)
AGGREGATE_FUNCS = frozenset({"sum", "count", "min", "max"})
ADJUST_OPS = frozenset({"add", "sub", "mul", "div", "assign"})


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any = None

    def describe(self) -> str:
        if self.op in ("is_null", "not_null"):
            return f"{self.field} {self.op}"
        return f"{self.field} {self.op} {self.value}"


@dataclass(frozen=True)
class Rule:
    id: str
    kind: ClassVar[str] = ""
    cross_row: ClassVar[bool] = False


@dataclass(frozen=True)
class FilterRule(Rule):
    """Soft-exclude the row when the predicate holds."""
    where: tuple[Condition, ...] = ()
    match: str = "all"  # all | any
    reason: str | None = None
    kind: ClassVar[str] = "filter"


@dataclass(frozen=True)
class DeriveRule(Rule):
    """Compute ``target`` from ``args`` (field names) and/or ``value``."""
    target: str = ""
    op: str = "value"
    args: tuple[str, ...] = ()
    value: Any = None
    when: tuple[Condition, ...] = ()
    kind: ClassVar[str] = "derive"


@dataclass(frozen=True)
class RenameRule(Rule):
    source: str = ""
    target: str = ""
    kind: ClassVar[str] = "rename"


@dataclass(frozen=True)
class CastRule(Rule):
    field: str = ""
    to: ValueType = ValueType.STRING
    format: str | None = None
    kind: ClassVar[str] = "cast"


@dataclass(frozen=True)
class JoinLookupRule(Rule):
    """Copy columns from an auxiliary dataset row whose ``lookup_column`` equals the row's ``key``."""
    role: str = ""
    key: str = ""
    lookup_column: str = ""
    fields: tuple[tuple[str, str], ...] = ()  # (aux column, target field)
    kind: ClassVar[str] = "join_lookup"


@dataclass(frozen=True)
class CrossRowRule(Rule):
    group_by: tuple[str, ...] = ()
    where: tuple[Condition, ...] = ()
    cross_row: ClassVar[bool] = True


@dataclass(frozen=True)
class DedupeRule(CrossRowRule):
    """Keep the lowest row number of each group, exclude the rest."""
    reason: str | None = None
    kind: ClassVar[str] = "dedupe"


@dataclass(frozen=True)
class NetReversalsRule(CrossRowRule):
    """Exclude equal-and-opposite ``amount_field`` pairs within a group."""
    amount_field: str = "payment_amount"
    reason: str | None = None
    kind: ClassVar[str] = "net_reversals"


@dataclass(frozen=True)
class AggregateRule(CrossRowRule):
    """Write ``func(field)`` over the group to ``target`` on every member."""
    field: str = ""
    func: str = "sum"
    target: str = ""
    kind: ClassVar[str] = "aggregate"


@dataclass(frozen=True)
class AdjustRule(CrossRowRule):
    """Apply the summed ``field`` of source rows to the target rows of each group.

    Source rows are the group members matching ``source_where``; targets are
    the remaining members matching ``where``. The target value is computed
    from the staged baseline, so repeated applies give the same result.
    """
    field: str = "payment_amount"
    op: str = "add"
    source_where: tuple[Condition, ...] = ()
    exclude_source: bool = False
    reason: str | None = None
    kind: ClassVar[str] = "adjust"
