import calendar
from datetime import date, datetime, timezone


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def format_amount(amount) -> str:
    """Format whole-unit amount with thousands separator"""
    if amount is None:
        return "—"
    return f"{int(amount):,} VND"


def format_date(date_obj) -> str:
    if not date_obj:
        return "—"
    return date_obj.strftime("%d/%m/%Y")


def format_period(month: int, year: int) -> str:
    return f"{month:02d}/{year}"


def previous_period(month: int, year: int) -> tuple[int, int]:
    if month == 1:
        return 12, year - 1
    return month - 1, year


def add_months(d: date, months: int) -> date:
    """Shift by whole months, clamping to the last day of the target month"""
    index = d.month - 1 + months
    year = d.year + index // 12
    month = index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return d.replace(year=year, month=month, day=day)


def months_between(start: date, end: date) -> int:
    """Whole months from start to end (partial trailing month not counted)"""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day < start.day:
        months -= 1
    return months
