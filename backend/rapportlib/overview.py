"""
Month/week overview of one worker's submission.

Every calendar day of the month gets a status with strict precedence
``ferien > absence > ok > missing`` and its hours (regular + Pikett). Days are
grouped by ISO week; only Monday–Friday count towards a week's missing days,
while weekend Pikett hours still count towards its total.
"""
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from . import dates
from .models import DAY_HOUR_FIELDS

STATUS_FERIEN = 'ferien'
STATUS_ABSENCE = 'absence'
STATUS_OK = 'ok'
STATUS_MISSING = 'missing'

WEEK_OK = 'ok'
WEEK_MISSING = 'missing'
WEEK_WEEKEND_ONLY = 'weekend_only'


def _num(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def day_work_hours(record: Optional[Dict[str, Any]]) -> float:
    """Non-Pikett hours of one day: entries + special entries + day hours."""
    if not record:
        return 0.0
    total = 0.0
    for entry in record.get('entries') or []:
        total += sum(_num(v) for v in (entry.get('hours') or {}).values())
    for special in record.get('specialEntries') or []:
        total += _num(special.get('hours'))
    day_hours = record.get('dayHours') or {}
    total += sum(_num(day_hours.get(name)) for name in DAY_HOUR_FIELDS)
    return total


def pikett_hours_by_date(pikett: List[Dict[str, Any]]) -> Dict[str, float]:
    result: Dict[str, float] = defaultdict(float)
    for entry in pikett or []:
        if entry.get('date'):
            result[entry['date']] += _num(entry.get('hours'))
    return dict(result)


def accepted_absence_dates(absences: List[Dict[str, Any]]) -> Set[str]:
    covered: Set[str] = set()
    for absence in absences or []:
        if absence.get('status') != 'accepted':
            continue
        rng = dates.normalize_range(absence.get('from', ''), absence.get('to', ''))
        if rng is None:
            continue
        covered.update(dates.date_key(d) for d in dates.iter_days(*rng))
    return covered


def classify_day(is_ferien: bool, is_absent: bool, hours: float) -> str:
    if is_ferien:
        return STATUS_FERIEN
    if is_absent:
        return STATUS_ABSENCE
    if hours > 0:
        return STATUS_OK
    return STATUS_MISSING


def build_overview(submission: Optional[Dict[str, Any]], year: int, month_index: int) -> Dict[str, Any]:
    """Calendar-week breakdown of *submission* for the given month.

    *submission* may be None (nothing transmitted yet); every weekday is then
    ``missing``. The input is only read, never modified.
    """
    submission = submission or {}
    days = submission.get('days') or {}
    pikett = pikett_hours_by_date(submission.get('pikett') or [])
    absent = accepted_absence_dates(submission.get('absences') or [])

    weeks: Dict[tuple, Dict[str, Any]] = {}
    month_total = 0.0
    for d in dates.month_days(year, month_index):
        key = dates.date_key(d)
        record = days.get(key) or {}
        hours = day_work_hours(record) + pikett.get(key, 0.0)
        status = classify_day(bool((record.get('flags') or {}).get('ferien')), key in absent, hours)
        workday = dates.is_workday(d)

        week_year, week = dates.iso_week(d)
        w = weeks.get((week_year, week))
        if w is None:
            w = weeks[(week_year, week)] = {
                'weekYear': week_year,
                'week': week,
                'weekKey': dates.week_key(week_year, week),
                'minDate': key,
                'maxDate': key,
                'workDays': 0,
                'missingDays': 0,
                'totalHours': 0.0,
                'days': [],
            }
        w['maxDate'] = key
        w['totalHours'] += hours
        if workday:
            w['workDays'] += 1
            if status == STATUS_MISSING:
                w['missingDays'] += 1
        w['days'].append({
            'date': key,
            'weekday': d.isoweekday(),
            'isWorkday': workday,
            'hours': round(hours, 2),
            'pikettHours': round(pikett.get(key, 0.0), 2),
            'status': status,
        })
        month_total += hours

    result_weeks = []
    for _, w in sorted(weeks.items()):
        w['totalHours'] = round(w['totalHours'], 2)
        if w['workDays'] == 0:
            w['status'] = WEEK_WEEKEND_ONLY
        elif w['missingDays'] == 0:
            w['status'] = WEEK_OK
        else:
            w['status'] = WEEK_MISSING
        result_weeks.append(w)

    return {
        'year': year,
        'monthIndex': month_index,
        'monthTotalHours': round(month_total, 2),
        'weeks': result_weeks,
    }
