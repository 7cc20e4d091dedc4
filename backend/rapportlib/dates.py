"""Calendar helpers: date keys, ISO weeks, month ranges, Bernese public holidays."""
import calendar
from datetime import date, datetime, timedelta
from functools import lru_cache
from typing import Iterator, List, Optional, Tuple


def parse_date_key(value: str) -> date:
    """Parse a strict ``YYYY-MM-DD`` key. Raises ValueError otherwise."""
    if not isinstance(value, str) or len(value) != 10:
        raise ValueError(f"Ungültiges Datum: {value!r}")
    return datetime.strptime(value, '%Y-%m-%d').date()


def try_parse_date_key(value) -> Optional[date]:
    try:
        return parse_date_key(value)
    except (TypeError, ValueError):
        return None


def date_key(d: date) -> str:
    return d.strftime('%Y-%m-%d')


def month_bounds(year: int, month_index: int) -> Tuple[date, date]:
    """First and last day of a month; month_index is 0-based (0 = January)."""
    month = month_index + 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last)


def iter_days(start: date, end: date) -> Iterator[date]:
    cursor = start
    while cursor <= end:
        yield cursor
        cursor += timedelta(days=1)


def month_days(year: int, month_index: int) -> List[date]:
    return list(iter_days(*month_bounds(year, month_index)))


def in_month(d: date, year: int, month_index: int) -> bool:
    return d.year == year and d.month == month_index + 1


def iso_week(d: date) -> Tuple[int, int]:
    """(ISO week year, ISO week). Week 1 contains the year's first Thursday."""
    iso = d.isocalendar()
    return iso[0], iso[1]


def week_key(week_year: int, week: int) -> str:
    return f"{week_year}-W{week}"


def parse_week_key(key: str) -> Tuple[int, int]:
    year_part, _, week_part = key.partition('-W')
    return int(year_part), int(week_part)


def week_dates(week_year: int, week: int) -> List[date]:
    """All seven dates (Monday first) of an ISO week."""
    monday = date.fromisocalendar(week_year, week, 1)
    return [monday + timedelta(days=i) for i in range(7)]


def weeks_in_month(year: int, month_index: int) -> List[Tuple[int, int]]:
    """ISO weeks touching the month, in calendar order."""
    seen: List[Tuple[int, int]] = []
    for d in month_days(year, month_index):
        wk = iso_week(d)
        if wk not in seen:
            seen.append(wk)
    return seen


def is_workday(d: date) -> bool:
    return d.weekday() < 5


def normalize_range(from_key: str, to_key: str) -> Optional[Tuple[date, date]]:
    """Parse an absence range, swapping reversed bounds. None if unparsable."""
    start = try_parse_date_key(from_key)
    end = try_parse_date_key(to_key)
    if start is None or end is None:
        return None
    if end < start:
        start, end = end, start
    return start, end


def ranges_overlap(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    return not (a_end < b_start or a_start > b_end)


# ─── Feiertage Kanton Bern ────────────────────────────────────────────────────

def easter_sunday(year: int) -> date:
    """Gregorian Easter Sunday (anonymous Gregorian algorithm)."""
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    wd = (32 + 2 * e + 2 * i - h - k) % 7
    m = (a + 11 * h + 22 * wd) // 451
    month, day = divmod(h + wd - 7 * m + 114, 31)
    return date(year, month, day + 1)


@lru_cache(maxsize=64)
def bern_holidays(year: int) -> frozenset:
    """Public holidays of the canton of Bern as date keys."""
    easter = easter_sunday(year)
    # Eidgenössischer Dank-, Buss- und Bettag: third Sunday of September
    first_sept = date(year, 9, 1)
    first_sunday = first_sept + timedelta(days=(6 - first_sept.weekday()) % 7)
    days = [
        date(year, 1, 1),                   # Neujahr
        date(year, 1, 2),                   # Berchtoldstag
        easter - timedelta(days=2),         # Karfreitag
        easter,                             # Ostersonntag
        easter + timedelta(days=1),         # Ostermontag
        easter + timedelta(days=39),        # Auffahrt
        easter + timedelta(days=50),        # Pfingstmontag
        date(year, 8, 1),                   # Bundesfeier
        first_sunday + timedelta(days=14),  # Bettag
        date(year, 12, 25),                 # Weihnachten
        date(year, 12, 26),                 # Stephanstag
    ]
    return frozenset(date_key(d) for d in days)


def is_bern_holiday(d: date) -> bool:
    return date_key(d) in bern_holidays(d.year)

