from datetime import date

from rental.utils.formatting import add_months, format_amount, format_period, months_between, previous_period


def test_add_months_clamps_day():
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)


def test_months_between():
    assert months_between(date(2026, 1, 1), date(2026, 7, 1)) == 6
    assert months_between(date(2026, 1, 15), date(2026, 7, 14)) == 5
    assert months_between(date(2025, 11, 1), date(2026, 2, 1)) == 3


def test_previous_period():
    assert previous_period(1, 2026) == (12, 2025)
    assert previous_period(7, 2026) == (6, 2026)


def test_format_helpers():
    assert format_period(3, 2026) == "03/2026"
    assert format_amount(1500000) == "1,500,000 VND"
