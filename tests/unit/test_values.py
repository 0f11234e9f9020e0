from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest

from ptrs_pipeline.models.canonical import ValueType
from ptrs_pipeline.services.values import (
    coerce,
    is_blank,
    is_probably_abn,
    normalize_abn,
    normalize_amount,
    parse_bool,
    parse_date,
    parse_int,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("1,200.00", Decimal("1200.00")),
        ("$950.50", Decimal("950.50")),
        ("A$ 1 000", Decimal("1000")),
        ("AUD 12.5", Decimal("12.5")),
        ("(1,200.00)", Decimal("-1200.00")),
        ("$(12.00)", Decimal("-12.00")),
        ("12.00-", Decimal("-12.00")),
        ("−120", Decimal("-120")),
        (7, Decimal("7")),
        (2.5, Decimal("2.5")),
    ],
)
def test_normalize_amount_variants(raw, expected):
    assert normalize_amount(raw) == expected


@pytest.mark.parametrize("raw", ["abc", "$", "1.2.3", float("inf"), True])
def test_normalize_amount_rejects(raw):
    with pytest.raises(ValueError):
        normalize_amount(raw)


def test_blank_values_are_none():
    assert is_blank(None) and is_blank("  ") and is_blank(float("nan"))
    assert normalize_amount("") is None
    assert parse_date(None) is None
    assert coerce(" ", ValueType.MONEY) is None


def test_parse_date_layouts():
    assert parse_date("15/07/2024") == date(2024, 7, 15)
    assert parse_date("15.07.2024") == date(2024, 7, 15)
    assert parse_date("2024-07-15") == date(2024, 7, 15)
    assert parse_date("2024-07-15T10:00:00") == date(2024, 7, 15)
    assert parse_date(datetime(2024, 7, 15, 9, 30)) == date(2024, 7, 15)
    assert parse_date("07/15/2024", "mm/dd/yyyy") == date(2024, 7, 15)


@pytest.mark.parametrize("raw", ["31/02/2024", "yesterday", "2024/13/01"])
def test_parse_date_rejects_impossible(raw):
    with pytest.raises(ValueError):
        parse_date(raw)


def test_parse_bool_and_int():
    assert parse_bool("Y") is True
    assert parse_bool("no") is False
    assert parse_bool(1) is True
    with pytest.raises(ValueError):
        parse_bool("maybe")
    assert parse_int("30") == 30
    with pytest.raises(ValueError):
        parse_int("30.5")


def test_abn_normalisation():
    assert normalize_abn("51 824 753 556") == "51824753556"
    assert normalize_abn(51824753556.0) == "51824753556"
    assert normalize_abn(None) == ""
    assert is_probably_abn("51 824 753 556")
    assert not is_probably_abn("1234")


def test_coerce_string_keeps_integers_clean():
    assert coerce(51824753556.0, ValueType.STRING) == "51824753556"
    assert coerce("  x ", ValueType.STRING) == "x"
