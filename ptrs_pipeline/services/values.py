from __future__ import annotations

import math
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from ..models.canonical import ValueType

"""Value normalisation shared by staging, cast rules and the validation gate.

All parse functions return ``None`` for blank input and raise ``ValueError``
for input that is present but cannot be interpreted. Callers decide whether
that is a row error or something else.
"""

__all__ = [
    "is_blank",
    "normalize_amount",
    "parse_date",
    "parse_bool",
    "parse_int",
    "normalize_abn",
    "is_probably_abn",
    "coerce",
]

_CURRENCY_MARKERS = re.compile(r"(A\$|AU\$|AUD|US\$|USD|NZ\$|NZD|[$€£¥])", re.IGNORECASE)
_SPACES = re.compile(r"[\s  ]+")
_DMY = re.compile(r"^(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})$")
_ISO = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")
_FORMAT_TOKENS = (("yyyy", "%Y"), ("yy", "%y"), ("mm", "%m"), ("dd", "%d"))

_TRUE = frozenset({"true", "t", "yes", "y", "1"})
_FALSE = frozenset({"false", "f", "no", "n", "0"})


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def normalize_amount(value: Any) -> Decimal | None:
    """Parse a money / number value into ``Decimal``.

    Accepts unicode minus, accounting parentheses ``(1,200.00)``, currency
    markers (``A$``, ``AUD``, ``$`` ...), thousands separators and spaces.
    """
    if is_blank(value):
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"not a finite number: {value!r}")
        return value
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isinf(value):
            raise ValueError(f"not a finite number: {value!r}")
        return Decimal(str(value))

    s = str(value).strip().replace("−", "-")
    negative = False
    if s.startswith("(") and s.endswith(")"):
        negative = True
        s = s[1:-1]
    s = _CURRENCY_MARKERS.sub("", s)
    s = _SPACES.sub("", s).replace(",", "")
    if s.startswith("(") and s.endswith(")"):  # "$(12.00)" 形式
        negative = True
        s = s[1:-1]
    if s.endswith("-") and not s.startswith("-"):  # 末尾マイナス "12.00-"
        s = "-" + s[:-1]
    if not s:
        raise ValueError(f"not a number: {value!r}")
    try:
        amount = Decimal(s)
    except InvalidOperation as e:
        raise ValueError(f"not a number: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return -amount if negative else amount


def _strptime_format(fmt: str) -> str:
    out = fmt.lower()
    for token, directive in _FORMAT_TOKENS:
        out = out.replace(token, directive)
    return out


def parse_date(value: Any, fmt: str | None = None) -> date | None:
    """Parse a date.

    Without ``fmt``: ``dd/mm/yyyy`` (also ``.`` / ``-`` separators), ISO
    ``yyyy-mm-dd`` (time part ignored) and native date / datetime values.
    With ``fmt`` (e.g. ``"mm/dd/yyyy"``) only that layout is accepted.
    Impossible calendar dates such as 31/02/2024 raise ``ValueError``.
    """
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    s = str(value).strip()
    if fmt:
        return datetime.strptime(s, _strptime_format(fmt)).date()
    m = _DMY.match(s)
    if m:
        d, mo, y = (int(g) for g in m.groups())
        return date(y, mo, d)
    m = _ISO.match(s)
    if m:
        y, mo, d = (int(g) for g in m.groups())
        return date(y, mo, d)
    raise ValueError(f"unrecognised date: {value!r}")


def parse_bool(value: Any) -> bool | None:
    if is_blank(value):
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)) and value in (0, 1):
        return bool(value)
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def parse_int(value: Any) -> int | None:
    amount = normalize_amount(value)
    if amount is None:
        return None
    if amount != amount.to_integral_value():
        raise ValueError(f"not an integer: {value!r}")
    return int(amount)


def normalize_abn(value: Any) -> str:
    """Strip everything but digits. Blank input gives ``""``."""
    if is_blank(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return re.sub(r"\D", "", str(value))


def is_probably_abn(value: Any) -> bool:
    """Well-formed check: exactly 11 digits once normalised."""
    return len(normalize_abn(value)) == 11


def coerce(value: Any, value_type: ValueType, fmt: str | None = None) -> Any:
    """Convert ``value`` to ``value_type``. Blank → None; bad input → ValueError."""
    if is_blank(value):
        return None
    if value_type is ValueType.STRING:
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return str(value).strip()
    if value_type in (ValueType.MONEY, ValueType.NUMBER):
        return normalize_amount(value)
    if value_type is ValueType.INTEGER:
        return parse_int(value)
    if value_type is ValueType.DATE:
        return parse_date(value, fmt)
    if value_type is ValueType.BOOLEAN:
        return parse_bool(value)
    raise ValueError(f"unsupported value type: {value_type!r}")
