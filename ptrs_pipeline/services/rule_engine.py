from __future__ import annotations

import copy
import logging
import re
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, DivisionByZero, InvalidOperation
from typing import Any

from ..errors import RuleConfigError
from ..models.canonical import ValueType
from ..models.rules import (
    ADJUST_OPS,
    AGGREGATE_FUNCS,
    CONDITION_OPS,
    DERIVE_OPS,
    AdjustRule,
    AggregateRule,
    CastRule,
    Condition,
    CrossRowRule,
    DedupeRule,
    DeriveRule,
    FilterRule,
    JoinLookupRule,
    NetReversalsRule,
    RenameRule,
    Rule,
)
from ..models.staged_row import RowError, StagedRow
from .values import coerce, is_blank, normalize_amount, parse_bool, parse_date

"""Rule engine.

Two passes over a run's staged rows:

1. Row pass. Row rules run strictly in declared order and each sees the
   effects of the earlier ones on the same row. Once a row is excluded the
   remaining row rules leave it alone. Rows are independent of each other in
   this pass, so it may be split across worker threads.
2. Cross-row pass. Runs after the whole row pass has settled, over
   non-excluded rows only. Members are grouped by key and every group is
   evaluated from its membership (ordered by row number), never from the
   rows' position in the input.

Rules only ever write to ``row.annotations``; the staged ``standard`` and
``custom`` values are never touched. Each apply starts by clearing the rule
annotations, so applying the same rule list twice gives the same state.

Rule documents are validated up front by ``parse_rules``: an unknown kind or
a missing required setting raises ``RuleConfigError`` before any row is
touched.
"""

__all__ = [
    "RuleOutcome",
    "parse_rules",
    "evaluate_condition",
    "apply_rules",
    "preview_rules",
    "LookupIndex",
]

logger = logging.getLogger(__name__)

_ROW_KINDS = {
    FilterRule.kind: FilterRule,
    DeriveRule.kind: DeriveRule,
    RenameRule.kind: RenameRule,
    CastRule.kind: CastRule,
    JoinLookupRule.kind: JoinLookupRule,
}
_CROSS_KINDS = {
    DedupeRule.kind: DedupeRule,
    NetReversalsRule.kind: NetReversalsRule,
    AggregateRule.kind: AggregateRule,
    AdjustRule.kind: AdjustRule,
}
_SYMBOL_OPS = {"==": "eq", "=": "eq", "!=": "neq", ">": "gt", ">=": "gte", "<": "lt", "<=": "lte"}
_EXPR = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*(==|!=|>=|<=|=|>|<)\s*(.+?)\s*$")
_CENT = Decimal("0.01")

# (role, lookup column) -> 正規化キー -> 補助行
LookupIndex = dict[tuple[str, str], dict[str, dict[str, Any]]]


@dataclass
class RuleOutcome:
    rows: list[StagedRow]
    rules: tuple[Rule, ...]
    excluded_rows: int = 0
    rule_error_rows: int = 0
    applied: dict[str, int] = field(default_factory=dict)  # rule id -> 影響行数


# ---------------------------------------------------------------------------
# parsing
# ---------------------------------------------------------------------------

def _require(raw: Mapping[str, Any], key: str, where: str) -> Any:
    value = raw.get(key)
    if value is None or (isinstance(value, (str, list, tuple, dict)) and not value):
        raise RuleConfigError(f"{where}: '{key}' is required")
    return value


def _str_list(value: Any, where: str, key: str) -> tuple[str, ...]:
    if isinstance(value, str):
        items = [v.strip() for v in value.split(",")]
    elif isinstance(value, Sequence):
        items = [str(v).strip() for v in value]
    else:
        raise RuleConfigError(f"{where}: '{key}' must be a list or comma separated string")
    return tuple(v for v in items if v)


def _parse_literal(text: str) -> Any:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text


def _parse_condition(raw: Any, where: str) -> Condition:
    if isinstance(raw, str):
        m = _EXPR.match(raw)
        if not m:
            raise RuleConfigError(f"{where}: cannot parse condition {raw!r}")
        return Condition(field=m.group(1), op=_SYMBOL_OPS[m.group(2)], value=_parse_literal(m.group(3)))
    if not isinstance(raw, Mapping):
        raise RuleConfigError(f"{where}: condition must be an object or expression string")
    name = _require(raw, "field", where)
    op = str(raw.get("op", "eq")).lower()
    op = _SYMBOL_OPS.get(op, op)
    if op not in CONDITION_OPS:
        raise RuleConfigError(f"{where}: unknown operator {op!r}")
    value = raw.get("value")
    if op in ("in", "nin"):
        if value is None:
            raise RuleConfigError(f"{where}: '{op}' requires a value list")
        value = _str_list(value, where, "value")
    elif op not in ("is_null", "not_null") and value is None:
        raise RuleConfigError(f"{where}: operator {op!r} requires a value")
    return Condition(field=str(name), op=op, value=value)


def _parse_conditions(raw: Any, where: str) -> tuple[Condition, ...]:
    if raw is None:
        return ()
    if isinstance(raw, (str, Mapping)):
        raw = [raw]
    return tuple(_parse_condition(c, f"{where}.where[{i}]") for i, c in enumerate(raw))


def _parse_one(raw: Any, index: int) -> Rule:
    if not isinstance(raw, Mapping):
        raise RuleConfigError(f"rules[{index}]: expected an object")
    kind = raw.get("kind")
    rule_id = str(raw.get("id") or f"rule-{index + 1}")
    where = f"rule {rule_id!r}"

    if kind == "filter":
        conditions = _parse_conditions(raw.get("where"), where)
        if not conditions:
            raise RuleConfigError(f"{where}: 'where' is required")
        match = str(raw.get("match", "all"))
        if match not in ("all", "any"):
            raise RuleConfigError(f"{where}: match must be 'all' or 'any'")
        return FilterRule(id=rule_id, where=conditions, match=match, reason=raw.get("reason"))

    if kind == "derive":
        target = str(_require(raw, "target", where))
        op = str(raw.get("op", "value"))
        if op not in DERIVE_OPS:
            raise RuleConfigError(f"{where}: unknown derive op {op!r}")
        args = _str_list(raw.get("args") or [], where, "args")
        value = raw.get("value")
        needed = {"copy": 1, "abs": 1, "negate": 1, "concat": 1, "coalesce": 1, "days_between": 2}.get(op, 0)
        if op in ("add", "sub", "mul", "div"):
            if not args or (len(args) < 2 and value is None):
                raise RuleConfigError(f"{where}: {op} needs two args or one arg and a value")
        elif len(args) < needed:
            raise RuleConfigError(f"{where}: {op} needs at least {needed} arg(s)")
        if op == "value" and "value" not in raw:
            raise RuleConfigError(f"{where}: 'value' is required")
        return DeriveRule(id=rule_id, target=target, op=op, args=args, value=value,
                          when=_parse_conditions(raw.get("when"), where))

    if kind == "rename":
        return RenameRule(id=rule_id, source=str(_require(raw, "source", where)),
                          target=str(_require(raw, "target", where)))

    if kind == "cast":
        to = str(_require(raw, "to", where)).lower()
        try:
            vt = ValueType(to)
        except ValueError:
            raise RuleConfigError(f"{where}: unknown type {to!r}") from None
        return CastRule(id=rule_id, field=str(_require(raw, "field", where)), to=vt, format=raw.get("format"))

    if kind == "join_lookup":
        fields_raw = _require(raw, "fields", where)
        if isinstance(fields_raw, Mapping):
            pairs = tuple((str(k), str(v)) for k, v in fields_raw.items())
        else:
            pairs = tuple((c, c) for c in _str_list(fields_raw, where, "fields"))
        return JoinLookupRule(id=rule_id, role=str(_require(raw, "role", where)),
                              key=str(_require(raw, "key", where)),
                              lookup_column=str(_require(raw, "lookup_column", where)), fields=pairs)

    if kind in _CROSS_KINDS:
        group_by = _str_list(raw.get("group_by") or [], where, "group_by")
        if not group_by:
            raise RuleConfigError(f"{where}: cross-row rule without 'group_by' is too broad")
        conditions = _parse_conditions(raw.get("where"), where)
        if kind == "dedupe":
            return DedupeRule(id=rule_id, group_by=group_by, where=conditions, reason=raw.get("reason"))
        if kind == "net_reversals":
            return NetReversalsRule(id=rule_id, group_by=group_by, where=conditions,
                                    amount_field=str(raw.get("amount_field") or "payment_amount"),
                                    reason=raw.get("reason"))
        if kind == "aggregate":
            func = str(raw.get("func", "sum"))
            if func not in AGGREGATE_FUNCS:
                raise RuleConfigError(f"{where}: unknown aggregate func {func!r}")
            return AggregateRule(id=rule_id, group_by=group_by, where=conditions,
                                 field=str(_require(raw, "field", where)), func=func,
                                 target=str(_require(raw, "target", where)))
        op = str(raw.get("op", "add"))
        if op not in ADJUST_OPS:
            raise RuleConfigError(f"{where}: unknown adjust op {op!r}")
        source_where = _parse_conditions(raw.get("source_where"), where)
        if not source_where:
            raise RuleConfigError(f"{where}: 'source_where' is required")
        return AdjustRule(id=rule_id, group_by=group_by, where=conditions,
                          field=str(raw.get("field") or "payment_amount"), op=op, source_where=source_where,
                          exclude_source=bool(raw.get("exclude_source", False)), reason=raw.get("reason"))

    known = ", ".join(sorted([*_ROW_KINDS, *_CROSS_KINDS]))
    raise RuleConfigError(f"{where}: unknown rule kind {kind!r} (known: {known})")


def parse_rules(raw_rules: Sequence[Any] | None) -> tuple[Rule, ...]:
    """Validate a raw rule list into typed rules.

    Raises:
        RuleConfigError: on the first malformed rule (nothing is applied)
    """
    rules: list[Rule] = []
    seen: set[str] = set()
    for i, raw in enumerate(raw_rules or []):
        rule = _parse_one(raw, i)
        if rule.id in seen:
            raise RuleConfigError(f"duplicate rule id {rule.id!r}")
        seen.add(rule.id)
        rules.append(rule)
    return tuple(rules)


# ---------------------------------------------------------------------------
# conditions
# ---------------------------------------------------------------------------

def _like(sample: Any, value: Any) -> Any:
    """Convert a configured literal to the type of the row value it is compared with."""
    if isinstance(sample, bool):
        return parse_bool(value)
    if isinstance(sample, (Decimal, int, float)):
        return normalize_amount(value)
    if isinstance(sample, date):
        return parse_date(value)
    return None if value is None else str(value).strip()


def _as_comparable(v: Any) -> Any:
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return Decimal(str(v))
    if isinstance(v, str):
        return v.strip()
    return v


def _equals(actual: Any, expected: Any) -> bool:
    try:
        other = _like(actual, expected)
    except ValueError:
        return False
    return _as_comparable(actual) == _as_comparable(other)


def evaluate_condition(row: StagedRow, cond: Condition) -> bool:
    actual = row.value(cond.field)
    if cond.op == "is_null":
        return is_blank(actual)
    if cond.op == "not_null":
        return not is_blank(actual)
    if is_blank(actual):
        # null は比較対象外 (neq / nin のみ真)
        return cond.op in ("neq", "nin")
    if cond.op == "eq":
        return _equals(actual, cond.value)
    if cond.op == "neq":
        return not _equals(actual, cond.value)
    if cond.op == "in":
        return any(_equals(actual, v) for v in cond.value)
    if cond.op == "nin":
        return not any(_equals(actual, v) for v in cond.value)
    try:
        other = _as_comparable(_like(actual, cond.value))
        left = _as_comparable(actual)
        if other is None:
            return False
        if cond.op == "gt":
            return left > other
        if cond.op == "gte":
            return left >= other
        if cond.op == "lt":
            return left < other
        if cond.op == "lte":
            return left <= other
    except (ValueError, TypeError):
        return False
    return False


def _matches(row: StagedRow, conditions: Sequence[Condition], match: str = "all") -> bool:
    if not conditions:
        return True
    results = (evaluate_condition(row, c) for c in conditions)
    return any(results) if match == "any" else all(results)


# ---------------------------------------------------------------------------
# row pass
# ---------------------------------------------------------------------------

def _number(v: Any) -> Decimal | None:
    return normalize_amount(v)


def _derive(row: StagedRow, rule: DeriveRule) -> Any:
    args = [row.value(a) for a in rule.args]
    op = rule.op
    if op == "value":
        return rule.value
    if op == "copy":
        return args[0]
    if op in ("abs", "negate"):
        n = _number(args[0])
        if n is None:
            return None
        return abs(n) if op == "abs" else -n
    if op == "concat":
        sep = "" if rule.value is None else str(rule.value)
        return sep.join(str(coerce(a, ValueType.STRING)) for a in args if not is_blank(a)) or None
    if op == "coalesce":
        for a in args:
            if not is_blank(a):
                return a
        return rule.value
    if op == "days_between":
        start, end = parse_date(args[0]), parse_date(args[1])
        if start is None or end is None:
            return None
        return (end - start).days
    # 四則演算
    a = _number(args[0])
    b = _number(args[1] if len(args) > 1 else rule.value)
    if a is None or b is None:
        return None
    if op == "add":
        return a + b
    if op == "sub":
        return a - b
    if op == "mul":
        return a * b
    if b == 0:
        raise ValueError("division by zero")
    return a / b


def _rule_error(rule: Rule, name: str, raw: Any, target: str, message: str) -> RowError:
    return RowError(field=name, raw_value=None if raw is None else str(raw), target_type=target,
                    code="RULE_EVALUATION_ERROR", message=f"{rule.id}: {message}")


def _set(row: StagedRow, name: str, value: Any) -> None:
    ann = row.annotations
    ann.overrides[name] = value
    if name in ann.removed:
        ann.removed.remove(name)


def _apply_row_rule(row: StagedRow, rule: Rule, lookups: LookupIndex) -> bool:
    """Apply one row rule. Returns True when the rule had an effect on the row."""
    ann = row.annotations
    if isinstance(rule, FilterRule):
        if _matches(row, rule.where, rule.match):
            reason = rule.reason or " and ".join(c.describe() for c in rule.where)
            ann.exclude(rule.id, reason)
            return True
        return False

    if isinstance(rule, DeriveRule):
        if not _matches(row, rule.when):
            return False
        try:
            value = _derive(row, rule)
        except (ValueError, ArithmeticError) as e:
            ann.rule_errors.append(_rule_error(rule, rule.target, None, "derive", str(e)))
            _set(row, rule.target, None)
            return True
        _set(row, rule.target, value)
        return True

    if isinstance(rule, RenameRule):
        if not row.has_field(rule.source):
            return False
        value = row.value(rule.source)
        ann.overrides.pop(rule.source, None)
        if rule.source not in ann.removed:
            ann.removed.append(rule.source)
        _set(row, rule.target, value)
        return True

    if isinstance(rule, CastRule):
        raw = row.value(rule.field)
        if is_blank(raw):
            return False
        try:
            _set(row, rule.field, coerce(raw, rule.to, rule.format))
        except ValueError as e:
            ann.rule_errors.append(_rule_error(rule, rule.field, raw, rule.to.value, str(e)))
            _set(row, rule.field, None)
        return True

    if isinstance(rule, JoinLookupRule):
        key = _lookup_key(row.value(rule.key))
        other = lookups.get((rule.role, rule.lookup_column), {}).get(key) if key else None
        if other is None:
            return False
        for column, target in rule.fields:
            _set(row, target, other.get(column))
        return True

    raise RuleConfigError(f"rule {rule.id!r}: not a row rule")  # pragma: no cover


def _row_pass(rows: Sequence[StagedRow], rules: Sequence[Rule], lookups: LookupIndex,
              applied: Counter[str]) -> None:
    for row in rows:
        for rule in rules:
            if row.annotations.excluded:
                break
            if _apply_row_rule(row, rule, lookups):
                row.annotations.applied_rules.append(rule.id)
                applied[rule.id] += 1


def _lookup_key(value: Any) -> str | None:
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return " ".join(str(value).split()).casefold()


def _build_lookups(rules: Sequence[Rule], aux_rows: Mapping[str, Sequence[dict[str, Any]]]) -> LookupIndex:
    index: LookupIndex = {}
    for rule in rules:
        if not isinstance(rule, JoinLookupRule):
            continue
        rows = aux_rows.get(rule.role)
        if rows is None:
            raise RuleConfigError(f"rule {rule.id!r}: no dataset with role {rule.role!r}")
        by_key: dict[str, dict[str, Any]] = {}
        for r in rows:
            k = _lookup_key(r.get(rule.lookup_column))
            if k is not None and k not in by_key:
                by_key[k] = r
        index[(rule.role, rule.lookup_column)] = by_key
    return index


# ---------------------------------------------------------------------------
# cross-row pass
# ---------------------------------------------------------------------------

def _group_key(row: StagedRow, group_by: Sequence[str]) -> tuple[str, ...] | None:
    parts: list[str] = []
    for name in group_by:
        v = row.value(name)
        if is_blank(v):
            return None
        if isinstance(v, (Decimal, int, float)) and not isinstance(v, bool):
            v = normalize_amount(v).normalize()
        elif isinstance(v, date):
            v = v.isoformat()
        parts.append(" ".join(str(v).split()).casefold())
    return tuple(parts)


def _groups(rows: Sequence[StagedRow], rule: CrossRowRule) -> list[list[StagedRow]]:
    grouped: dict[tuple[str, ...], list[StagedRow]] = {}
    for row in rows:
        if row.annotations.excluded or not _matches(row, rule.where):
            continue
        key = _group_key(row, rule.group_by)
        if key is not None:
            grouped.setdefault(key, []).append(row)
    return [sorted(grouped[k], key=lambda r: r.row_no) for k in sorted(grouped)]


def _safe_number(row: StagedRow, name: str) -> Decimal | None:
    try:
        return normalize_amount(row.value(name))
    except ValueError:
        return None


def _mark(row: StagedRow, rule: Rule, applied: Counter[str]) -> None:
    if rule.id not in row.annotations.applied_rules:
        row.annotations.applied_rules.append(rule.id)
        applied[rule.id] += 1


def _cross_dedupe(group: list[StagedRow], rule: DedupeRule, applied: Counter[str]) -> None:
    keeper = group[0]
    for row in group[1:]:
        row.annotations.exclude(rule.id, rule.reason or f"duplicate of row {keeper.row_no}")
        _mark(row, rule, applied)


def _cross_net_reversals(group: list[StagedRow], rule: NetReversalsRule, applied: Counter[str]) -> None:
    positives: dict[Decimal, list[StagedRow]] = {}
    negatives: dict[Decimal, list[StagedRow]] = {}
    for row in group:
        amount = _safe_number(row, rule.amount_field)
        if amount is None or amount == 0:
            continue
        bucket = positives if amount > 0 else negatives
        bucket.setdefault(abs(amount).normalize(), []).append(row)
    for magnitude in sorted(positives):
        for pos, neg in zip(positives[magnitude], negatives.get(magnitude, []), strict=False):
            pos.annotations.exclude(rule.id, rule.reason or f"reversed by row {neg.row_no}")
            neg.annotations.exclude(rule.id, rule.reason or f"reversal of row {pos.row_no}")
            _mark(pos, rule, applied)
            _mark(neg, rule, applied)


def _cross_aggregate(group: list[StagedRow], rule: AggregateRule, applied: Counter[str]) -> None:
    if rule.func == "count":
        result: Any = sum(1 for r in group if not is_blank(r.value(rule.field)))
    else:
        numbers = [n for n in (_safe_number(r, rule.field) for r in group) if n is not None]
        if not numbers:
            result = None
        elif rule.func == "sum":
            result = sum(numbers, Decimal(0))
        elif rule.func == "min":
            result = min(numbers)
        else:
            result = max(numbers)
    for row in group:
        _set(row, rule.target, result)
        _mark(row, rule, applied)


def _cross_adjust(group: list[StagedRow], rule: AdjustRule, applied: Counter[str]) -> None:
    sources = [r for r in group if _matches(r, rule.source_where)]
    if not sources:
        return
    source_nos = {r.row_no for r in sources}
    targets = [r for r in group if r.row_no not in source_nos]
    delta = sum((n for n in (_safe_number(r, rule.field) for r in sources) if n is not None), Decimal(0))
    for row in targets:
        base = _safe_number(row, rule.field)
        try:
            if rule.op == "assign":
                new = delta
            elif base is None:
                continue
            elif rule.op == "add":
                new = base + delta
            elif rule.op == "sub":
                new = base - delta
            elif rule.op == "mul":
                new = base * delta
            else:
                new = base / delta
        except (DivisionByZero, InvalidOperation):
            row.annotations.rule_errors.append(
                _rule_error(rule, rule.field, base, "adjust", "division by zero"))
            continue
        _set(row, rule.field, new.quantize(_CENT, rounding=ROUND_HALF_UP))
        _mark(row, rule, applied)
    if rule.exclude_source and targets:
        for row in sources:
            row.annotations.exclude(rule.id, rule.reason or f"applied to {len(targets)} row(s) by {rule.id}")
            _mark(row, rule, applied)


_CROSS_HANDLERS: dict[type, Callable[..., None]] = {
    DedupeRule: _cross_dedupe,
    NetReversalsRule: _cross_net_reversals,
    AggregateRule: _cross_aggregate,
    AdjustRule: _cross_adjust,
}


def _cross_pass(rows: Sequence[StagedRow], rules: Sequence[CrossRowRule], applied: Counter[str]) -> None:
    for rule in rules:
        handler = _CROSS_HANDLERS[type(rule)]
        for group in _groups(rows, rule):
            handler(group, rule, applied)


# ---------------------------------------------------------------------------
# entry points
# ---------------------------------------------------------------------------

def apply_rules(
    rows: Sequence[StagedRow],
    raw_rules: Sequence[Any] | Sequence[Rule] | None,
    *,
    aux_rows: Mapping[str, Sequence[dict[str, Any]]] | None = None,
    workers: int = 1,
    chunk_size: int = 1000,
) -> RuleOutcome:
    """Apply a rule list to ``rows`` in place (annotations only).

    Args:
        rows: Staged rows of one run
        raw_rules: Raw rule documents (or already parsed rules)
        aux_rows: Auxiliary dataset rows by role, for ``join_lookup`` rules
        workers: Threads for the row pass (the cross-row pass is a barrier after it)

    Raises:
        RuleConfigError: malformed rule list; no row is modified
    """
    if raw_rules and all(isinstance(r, Rule) for r in raw_rules):
        rules = tuple(raw_rules)  # type: ignore[arg-type]
    else:
        rules = parse_rules(raw_rules)  # type: ignore[arg-type]
    lookups = _build_lookups(rules, aux_rows or {})
    row_rules = [r for r in rules if not r.cross_row]
    cross_rules = [r for r in rules if r.cross_row]

    ordered = sorted(rows, key=lambda r: r.row_no)
    for row in ordered:
        row.annotations.reset_rules()

    applied: Counter[str] = Counter()
    if workers > 1 and len(ordered) > chunk_size:
        chunks = [ordered[i:i + chunk_size] for i in range(0, len(ordered), chunk_size)]
        counters = [Counter() for _ in chunks]
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rules") as pool:
            list(pool.map(lambda pair: _row_pass(pair[0], row_rules, lookups, pair[1]), zip(chunks, counters)))
        for c in counters:
            applied.update(c)
    else:
        _row_pass(ordered, row_rules, lookups, applied)

    _cross_pass(ordered, cross_rules, applied)  # type: ignore[arg-type]

    outcome = RuleOutcome(
        rows=ordered,
        rules=rules,
        excluded_rows=sum(1 for r in ordered if r.annotations.excluded),
        rule_error_rows=sum(1 for r in ordered if r.annotations.rule_errors),
        applied={r.id: applied.get(r.id, 0) for r in rules},
    )
    logger.debug(f"applied {len(rules)} rule(s) to {len(ordered)} rows; excluded={outcome.excluded_rows}")
    return outcome


def preview_rules(
    rows: Sequence[StagedRow],
    raw_rules: Sequence[Any] | None,
    *,
    aux_rows: Mapping[str, Sequence[dict[str, Any]]] | None = None,
    limit: int = 20,
) -> RuleOutcome:
    """Apply rules to copies of ``rows`` and return the first ``limit`` annotated rows.

    Cross-row rules see the full row set, so group results are the same as a
    real apply. Nothing is persisted and the input rows are not modified.
    """
    outcome = apply_rules(copy.deepcopy(list(rows)), raw_rules, aux_rows=aux_rows)
    outcome.rows = outcome.rows[:limit]
    return outcome
