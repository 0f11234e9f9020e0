from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

"""Canonical ("standard") field catalogue for payment times reporting.

A staged row always carries every catalogue field in its standard bucket,
``None`` when the source did not provide a usable value.
"""

__all__ = [
    "ValueType",
    "CanonicalField",
    "CANONICAL_FIELDS",
    "REQUIRED_FOR_REPORT",
    "PAYEE_ID_FIELD",
    "PAYER_ID_FIELD",
    "AMOUNT_FIELD",
    "field_type",
    "is_canonical",
]


class ValueType(Enum):
    STRING = "string"
    MONEY = "money"
    NUMBER = "number"
    INTEGER = "integer"
    DATE = "date"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class CanonicalField:
    name: str
    value_type: ValueType
    required_for_report: bool = False


_S, _M, _D, _I, _B = (
    ValueType.STRING,
    ValueType.MONEY,
    ValueType.DATE,
    ValueType.INTEGER,
    ValueType.BOOLEAN,
)

_CATALOGUE: tuple[CanonicalField, ...] = (
    # 取引の同一性
    CanonicalField("payer_entity_name", _S, True),
    CanonicalField("payer_entity_abn", _S, True),
    CanonicalField("payer_entity_acn_arbn", _S),
    CanonicalField("payee_entity_name", _S, True),
    CanonicalField("payee_entity_abn", _S, True),
    CanonicalField("payee_entity_acn_arbn", _S),
    CanonicalField("invoice_reference_number", _S, True),
    # 金額
    CanonicalField("payment_amount", _M, True),
    CanonicalField("description", _S),
    # 日付
    CanonicalField("payment_date", _D, True),
    CanonicalField("supply_date", _D),
    CanonicalField("notice_for_payment_issue_date", _D),
    CanonicalField("invoice_issue_date", _D),
    CanonicalField("invoice_receipt_date", _D),
    CanonicalField("invoice_due_date", _D),
    # 支払条件
    CanonicalField("contract_po_reference_number", _S),
    CanonicalField("contract_po_payment_terms", _S),
    CanonicalField("notice_for_payment_terms", _S),
    CanonicalField("invoice_payment_terms", _S),
    CanonicalField("payment_term", _S),
    CanonicalField("payment_term_days", _I),
    # フラグ
    CanonicalField("trade_credit_payment", _B),
    CanonicalField("excluded_trade_credit_payment", _B),
    CanonicalField("peppol_einvoice_enabled", _B),
    CanonicalField("rcti", _B),
    CanonicalField("credit_card_payment", _B),
    CanonicalField("credit_card_no", _S),
    CanonicalField("partial_payment", _B),
)

CANONICAL_FIELDS: dict[str, CanonicalField] = {f.name: f for f in _CATALOGUE}
REQUIRED_FOR_REPORT: tuple[str, ...] = tuple(f.name for f in _CATALOGUE if f.required_for_report)

PAYEE_ID_FIELD = "payee_entity_abn"
PAYER_ID_FIELD = "payer_entity_abn"
AMOUNT_FIELD = "payment_amount"


def is_canonical(name: str) -> bool:
    return name in CANONICAL_FIELDS


def field_type(name: str) -> ValueType:
    """Declared value type of a canonical field (KeyError for unknown names)."""
    return CANONICAL_FIELDS[name].value_type
