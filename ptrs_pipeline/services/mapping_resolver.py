from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping, Sequence
from dataclasses import replace
from typing import Any

from ..errors import MappingConfigError
from ..models.canonical import CANONICAL_FIELDS, ValueType
from ..models.column_map import (
    BindingSource,
    ColumnKind,
    ColumnMapConfig,
    ConcatSegment,
    CustomField,
    FallbackEntry,
    FieldBinding,
    FieldMapping,
    JoinHint,
    PassthroughColumn,
    ResolvedColumn,
    ResolvedCustomField,
    ResolvedMapping,
)

"""Mapping resolver.

Turns a column map document plus the header list of a run's main dataset into
a ``ResolvedMapping``. Everything here is side-effect free and deterministic:
the same document and headers always give an equal result (and fingerprint),
so the resolver backs both the mapping preview and staging.

Resolution order for a canonical field:
    1. a direct mapping whose header is present (exact header match first,
       then case-insensitive / whitespace-collapsed match)
    2. the field's fallback chain, in declared order: the first alternate
       header present, or a literal default (``{default: v}`` / ``"=v"``)
    3. the run-level ``defaults`` table
    4. unresolved (staging records the absence per row)

Source headers not consumed by a canonical mapping or an explicit passthrough
are carried through as implicit passthrough columns under their own name.
"""

__all__ = [
    "header_key",
    "parse_column_map",
    "merge_documents",
    "resolve_mapping",
]

_SECTIONS = ("mappings", "passthrough", "fallbacks", "defaults", "joins", "custom_fields", "rules")


def header_key(header: str) -> str:
    """Tolerant comparison key: whitespace collapsed, case folded."""
    return " ".join(str(header).split()).casefold()


# ---------------------------------------------------------------------------
# document parsing
# ---------------------------------------------------------------------------

def _value_type(raw: Any, where: str) -> ValueType:
    try:
        return ValueType(str(raw).lower())
    except ValueError:
        allowed = ", ".join(t.value for t in ValueType)
        raise MappingConfigError(f"{where}: unknown type {raw!r} (allowed: {allowed})") from None


def _canonical(name: Any, where: str) -> str:
    if not isinstance(name, str) or name not in CANONICAL_FIELDS:
        raise MappingConfigError(f"{where}: unknown canonical field {name!r}")
    return name


def _parse_mappings(raw: Mapping[str, Any]) -> tuple[FieldMapping, ...]:
    out: list[FieldMapping] = []
    for header, entry in raw.items():
        where = f"mappings[{header!r}]"
        if isinstance(entry, str):
            name = _canonical(entry, where)
            out.append(FieldMapping(header=header, field=name, value_type=CANONICAL_FIELDS[name].value_type))
            continue
        if not isinstance(entry, Mapping) or "field" not in entry:
            raise MappingConfigError(f"{where}: expected a field name or an object with 'field'")
        name = _canonical(entry["field"], where)
        vt = _value_type(entry["type"], where) if entry.get("type") else CANONICAL_FIELDS[name].value_type
        out.append(FieldMapping(header=header, field=name, value_type=vt, format=entry.get("format")))
    return tuple(out)


def _parse_passthrough(raw: Any) -> tuple[PassthroughColumn, ...]:
    if isinstance(raw, Sequence) and not isinstance(raw, str):
        return tuple(PassthroughColumn(header=str(h), alias=str(h)) for h in raw)
    out: list[PassthroughColumn] = []
    for header, entry in raw.items():
        alias = header
        if isinstance(entry, str) and entry:
            alias = entry
        elif isinstance(entry, Mapping) and entry.get("alias"):
            alias = str(entry["alias"])
        out.append(PassthroughColumn(header=header, alias=alias))
    return tuple(out)


def _parse_fallback_entry(entry: Any, where: str) -> FallbackEntry:
    if isinstance(entry, Mapping):
        if "default" in entry:
            return FallbackEntry(default=entry["default"], is_default=True)
        if entry.get("header"):
            return FallbackEntry(header=str(entry["header"]))
        raise MappingConfigError(f"{where}: expected 'header' or 'default'")
    if isinstance(entry, str):
        if entry.startswith("="):
            return FallbackEntry(default=entry[1:], is_default=True)
        return FallbackEntry(header=entry)
    raise MappingConfigError(f"{where}: unsupported fallback entry {entry!r}")


def _parse_custom_fields(raw: Sequence[Any]) -> tuple[CustomField, ...]:
    out: list[CustomField] = []
    seen: set[str] = set()
    for i, item in enumerate(raw):
        where = f"custom_fields[{i}]"
        if not isinstance(item, Mapping) or not item.get("key"):
            raise MappingConfigError(f"{where}: 'key' is required")
        key = str(item["key"])
        if key in seen:
            raise MappingConfigError(f"{where}: duplicate custom field {key!r}")
        seen.add(key)
        segments: list[ConcatSegment] = []
        for j, seg in enumerate(item.get("segments") or []):
            kind = seg.get("kind") if isinstance(seg, Mapping) else None
            if kind not in ("column", "literal") or "value" not in seg:
                raise MappingConfigError(f"{where}.segments[{j}]: expected kind column|literal with a value")
            segments.append(ConcatSegment(kind=kind, value=str(seg["value"])))
        if not segments:
            raise MappingConfigError(f"{where}: at least one segment is required")
        out.append(CustomField(key=key, segments=tuple(segments)))
    return tuple(out)


def _parse_joins(raw: Sequence[Any]) -> tuple[JoinHint, ...]:
    out: list[JoinHint] = []
    for i, item in enumerate(raw):
        if not isinstance(item, Mapping):
            raise MappingConfigError(f"joins[{i}]: expected an object")
        missing = [k for k in ("role", "main_column", "other_column") if not item.get(k)]
        if missing:
            raise MappingConfigError(f"joins[{i}]: missing {', '.join(missing)}")
        out.append(JoinHint(role=str(item["role"]), main_column=str(item["main_column"]),
                            other_column=str(item["other_column"])))
    return tuple(out)


def parse_column_map(document: Mapping[str, Any] | None) -> ColumnMapConfig:
    """Parse a column map document into a ``ColumnMapConfig``.

    Raises:
        MappingConfigError: unknown canonical field, unknown value type or a
            malformed section. Nothing is partially applied.
    """
    doc = dict(document or {})
    unknown = sorted(set(doc) - set(_SECTIONS))
    if unknown:
        raise MappingConfigError(f"unknown column map section(s): {', '.join(unknown)}")

    fallbacks: dict[str, tuple[FallbackEntry, ...]] = {}
    for name, chain in (doc.get("fallbacks") or {}).items():
        where = f"fallbacks[{name!r}]"
        _canonical(name, where)
        if isinstance(chain, (str, Mapping)):
            chain = [chain]
        fallbacks[name] = tuple(_parse_fallback_entry(e, where) for e in chain)

    # run 既定値は fallback chain の末尾扱い
    for name, value in (doc.get("defaults") or {}).items():
        _canonical(name, f"defaults[{name!r}]")
        fallbacks[name] = (*fallbacks.get(name, ()), FallbackEntry(default=value, is_default=True))

    rules = doc.get("rules") or []
    if not isinstance(rules, Sequence) or isinstance(rules, str):
        raise MappingConfigError("rules: expected a list")

    return ColumnMapConfig(
        mappings=_parse_mappings(doc.get("mappings") or {}),
        passthrough=_parse_passthrough(doc.get("passthrough") or {}),
        fallbacks=fallbacks,
        custom_fields=_parse_custom_fields(doc.get("custom_fields") or []),
        joins=_parse_joins(doc.get("joins") or []),
        rules=tuple(dict(r) if isinstance(r, Mapping) else r for r in rules),
    )


def merge_documents(profile_doc: Mapping[str, Any] | None, run_doc: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge profile-level defaults underneath run-specific overrides.

    Keyed sections (mappings, passthrough, fallbacks, defaults) merge per key
    with the run winning; custom fields merge by ``key``; list sections
    (joins, rules) are taken from the run when it declares them.
    """
    base = dict(profile_doc or {})
    over = dict(run_doc or {})
    merged: dict[str, Any] = {}
    for section in ("mappings", "passthrough", "fallbacks", "defaults"):
        b, o = base.get(section), over.get(section)
        if isinstance(b, Sequence) and not isinstance(b, str):
            b = {h: None for h in b}
        if isinstance(o, Sequence) and not isinstance(o, str):
            o = {h: None for h in o}
        if b or o:
            merged[section] = {**(b or {}), **(o or {})}
    if base.get("custom_fields") or over.get("custom_fields"):
        by_key: dict[str, Any] = {}
        for cf in [*(base.get("custom_fields") or []), *(over.get("custom_fields") or [])]:
            by_key[str(cf.get("key"))] = cf
        merged["custom_fields"] = list(by_key.values())
    for section in ("joins", "rules"):
        if section in over:
            merged[section] = over[section]
        elif section in base:
            merged[section] = base[section]
    extra = sorted((set(base) | set(over)) - set(_SECTIONS))
    for section in extra:  # parse_column_map で拒否させる
        merged[section] = over.get(section, base.get(section))
    return merged


# ---------------------------------------------------------------------------
# resolution
# ---------------------------------------------------------------------------

class _HeaderIndex:
    def __init__(self, headers: Sequence[str]) -> None:
        self.headers = [str(h) for h in headers]
        self.exact = set(self.headers)
        self.tolerant: dict[str, str] = {}
        for h in self.headers:
            self.tolerant.setdefault(header_key(h), h)

    def find_exact(self, name: str) -> str | None:
        return name if name in self.exact else None

    def find(self, name: str) -> str | None:
        return self.find_exact(name) or self.tolerant.get(header_key(name))


def _fingerprint(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def resolve_mapping(
    config: ColumnMapConfig | Mapping[str, Any] | None,
    headers: Sequence[str],
) -> ResolvedMapping:
    """Resolve a column map against the main dataset's headers.

    Args:
        config: Parsed config, or a raw (already merged) document
        headers: Main dataset header list, in file order

    Returns:
        ResolvedMapping covering every source header and every canonical field
    """
    if not isinstance(config, ColumnMapConfig):
        config = parse_column_map(config)
    index = _HeaderIndex(headers)
    issues: list[str] = []

    consumed: dict[str, ResolvedColumn] = {}
    bindings: dict[str, FieldBinding] = {}

    # 1. direct mappings: exact header match wins over tolerant match
    matched: dict[int, str] = {}
    for i, m in enumerate(config.mappings):
        src = index.find_exact(m.header)
        if src is not None:
            matched[i] = src
    taken = set(matched.values())
    for i, m in enumerate(config.mappings):
        if i in matched:
            continue
        src = index.find(m.header)
        if src is not None and src not in taken:
            matched[i] = src
            taken.add(src)

    for i, m in enumerate(config.mappings):
        src = matched.get(i)
        if src is None:
            issues.append(f"mapped header {m.header!r} not found in dataset")
            continue
        if m.field in bindings:
            issues.append(f"field {m.field!r} already mapped from {bindings[m.field].header!r}; "
                          f"header {src!r} ignored")
            continue
        bindings[m.field] = FieldBinding(
            field=m.field, source=BindingSource.COLUMN, header=src, label=src,
            value_type=m.value_type, format=m.format,
        )
        consumed[src] = ResolvedColumn(header=src, kind=ColumnKind.CANONICAL, target=m.field,
                                       value_type=m.value_type, format=m.format, via="direct")

    # 2. explicit passthrough
    for p in config.passthrough:
        src = index.find(p.header)
        if src is None:
            issues.append(f"passthrough header {p.header!r} not found in dataset")
            continue
        if src in consumed:
            continue
        consumed[src] = ResolvedColumn(header=src, kind=ColumnKind.PASSTHROUGH, target=p.alias,
                                       value_type=ValueType.STRING, via="passthrough")

    # 3. fallback chains / defaults, catalogue order
    for name, canon in CANONICAL_FIELDS.items():
        if name in bindings:
            continue
        binding: FieldBinding | None = None
        for entry in config.fallbacks.get(name, ()):
            if entry.is_default:
                binding = FieldBinding(field=name, source=BindingSource.DEFAULT, default=entry.default,
                                       label=entry.label, value_type=canon.value_type)
                break
            src = index.find(str(entry.header))
            if src is not None:
                binding = FieldBinding(field=name, source=BindingSource.COLUMN, header=src, label=src,
                                       value_type=canon.value_type)
                if src not in consumed:
                    consumed[src] = ResolvedColumn(header=src, kind=ColumnKind.CANONICAL, target=name,
                                                   value_type=canon.value_type, via="fallback")
                break
        bindings[name] = binding or FieldBinding(field=name, source=BindingSource.UNRESOLVED,
                                                 value_type=canon.value_type)

    # 4. implicit passthrough
    columns: list[ResolvedColumn] = []
    for h in index.headers:
        col = consumed.get(h)
        if col is None:
            col = ResolvedColumn(header=h, kind=ColumnKind.PASSTHROUGH, target=h,
                                 value_type=ValueType.STRING, via="implicit")
            consumed[h] = col
        columns.append(col)

    custom_fields: list[ResolvedCustomField] = []
    for cf in config.custom_fields:
        segments: list[ConcatSegment] = []
        for seg in cf.segments:
            if seg.kind == "column":
                src = index.find(seg.value)
                if src is None:
                    issues.append(f"custom field {cf.key!r} references missing column {seg.value!r}")
                    continue
                segments.append(ConcatSegment(kind="column", value=src))
            else:
                segments.append(seg)
        custom_fields.append(ResolvedCustomField(key=cf.key, segments=tuple(segments)))

    joins: list[JoinHint] = []
    for j in config.joins:
        src = index.find(j.main_column)
        if src is None:
            issues.append(f"join {j.role!r} main column {j.main_column!r} not found in dataset")
            continue
        joins.append(JoinHint(role=j.role, main_column=src, other_column=j.other_column))

    fields = tuple(bindings[name] for name in CANONICAL_FIELDS)
    unresolved = tuple(b.field for b in fields if b.source is BindingSource.UNRESOLVED)
    resolved = ResolvedMapping(
        columns=tuple(columns),
        fields=fields,
        custom_fields=tuple(custom_fields),
        joins=tuple(joins),
        unresolved_fields=unresolved,
        issues=tuple(issues),
    )
    return replace(resolved, fingerprint=_fingerprint(resolved.as_dict()))
