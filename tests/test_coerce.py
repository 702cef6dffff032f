from datetime import date, datetime
from decimal import Decimal

from donor_intel.utils.coerce import date_only_str, parse_date_only, to_date_only, to_number, to_optional_number


def test_to_number_accepts_numbers_and_numeric_strings():
    assert to_number(12) == 12.0
    assert to_number(12.5) == 12.5
    assert to_number(" 40.25 ") == 40.25
    assert to_number(Decimal("99.10")) == 99.1


def test_to_number_falls_back_to_zero():
    for bad in (None, "", "   ", "abc", "NaN", "inf", float("nan"), float("-inf"), True, [], {}):
        assert to_number(bad) == 0.0


def test_to_optional_number_keeps_missing_distinct_from_zero():
    assert to_optional_number(None) is None
    assert to_optional_number("n/a") is None
    assert to_optional_number("0") == 0.0


def test_parse_date_only():
    assert parse_date_only("2026-03-04") == date(2026, 3, 4)
    assert parse_date_only("2026-03-04T10:15:00Z") == date(2026, 3, 4)
    assert parse_date_only(date(2025, 1, 1)) == date(2025, 1, 1)
    assert parse_date_only(datetime(2025, 1, 1, 9, 30)) == date(2025, 1, 1)


def test_parse_date_only_rejects_garbage():
    for bad in (None, "", "yesterday", "03/04/2026", "2026-13-40", 20260304):
        assert parse_date_only(bad) is None


def test_date_only_strings():
    assert date_only_str("2026-01-15T00:00:00") == "2026-01-15"
    assert date_only_str(date(2026, 1, 15)) == "2026-01-15"
    assert date_only_str(None) is None
    assert to_date_only(datetime(2026, 1, 15, 23, 59)) == "2026-01-15"


def test_out_of_range_values_do_not_raise():
    assert to_optional_number(10 ** 400) is None
    assert to_optional_number(Decimal("sNaN")) is None
    assert to_optional_number(Decimal("1e400")) is None
    assert to_optional_number("1e400") is None
    assert to_number(10 ** 400) == 0.0
    assert to_number(Decimal("sNaN")) == 0.0


def test_only_plain_decimal_strings_are_numbers():
    assert to_optional_number("1_000") is None
    assert to_optional_number(" nan ") is None
    assert to_optional_number("Infinity") is None
    assert to_optional_number("0x1A") is None
    assert to_optional_number("-12.") == -12.0
    assert to_optional_number("+.5") == 0.5
    assert to_optional_number("2.5e3") == 2500.0
