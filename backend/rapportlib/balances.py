"""
Month totals and yearly balances (Überzeit, Vorarbeit, Ferien).

Rules, as used by the worker dashboard:
  • Daily target (Soll) is 8 h. On a normal day with hours, ÜZ1 += hours - 8.
  • On a vacation-flagged day, worked hours below 8 produce no minus hours;
    more than 8 h count as ÜZ1 (hours - 8).
  • Vorarbeit: the first ``vorarbeitRequired`` positive ÜZ1 hours of a year are
    owed pre-work and are deducted from the ÜZ1 balance.
  • ÜZ2 = Pikett hours, ÜZ3 = Pikett hours flagged ``isOvertime3``.
  • Vacation use per flagged weekday (public holidays excluded): 1 day with
    0 h worked, 0.5 with less than 8 h, 0 otherwise. This fractional rule is
    kept exactly as the business defined it, including the >8 h case.
"""
import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError

from . import dates
from .errors import StoreCorrupt
from .models import DAY_HOUR_FIELDS, OPERATION_CODES
from .overview import day_work_hours
from .storage import read_json

_logger = logging.getLogger(__name__)

DAILY_SOLL = 8.0


class YearConfig(BaseModel):
    vorarbeitRequired: float = Field(0, ge=0)
    ueZ1CarryIn: float = 0
    ueZ2CarryIn: float = 0
    ueZ3CarryIn: float = 0
    vacationDaysPerYear: float = Field(21, ge=0)
    vacationCarryInDays: float = 0


DEFAULT_YEAR_CONFIG: Dict[int, YearConfig] = {
    2025: YearConfig(vorarbeitRequired=39, vacationDaysPerYear=21),
    2026: YearConfig(vorarbeitRequired=39, vacationDaysPerYear=21),
}


def load_year_config(path: str) -> Dict[int, YearConfig]:
    """Defaults, overridden per year by ``year_config.json`` (``{"2027": {...}}``)."""
    configs = dict(DEFAULT_YEAR_CONFIG)
    raw = read_json(path, dict, StoreCorrupt)
    if not isinstance(raw, dict):
        raise StoreCorrupt("Jahreskonfiguration muss ein Objekt sein", path=path)
    for key, value in raw.items():
        try:
            configs[int(key)] = YearConfig.model_validate(value)
        except (ValueError, ValidationError) as exc:
            raise StoreCorrupt(f"Jahreskonfiguration für {key} ist ungültig: {exc}", path=path) from exc
    return configs


def config_for(configs: Dict[int, YearConfig], year: int) -> YearConfig:
    return configs.get(year) or YearConfig()


def _num(value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def _r(value: float) -> float:
    return round(value, 2)


# ─── per-submission totals ────────────────────────────────────────────────────

def compute_totals(payload: Dict[str, Any]) -> Dict[str, float]:
    kom = regie = fehler = day_hours = 0.0
    for record in (payload.get('days') or {}).values():
        for entry in record.get('entries') or []:
            kom += sum(_num(v) for k, v in (entry.get('hours') or {}).items() if k in OPERATION_CODES)
        for special in record.get('specialEntries') or []:
            hours = _num(special.get('hours'))
            if special.get('type') == 'fehler':
                fehler += hours
            else:
                regie += hours
        dh = record.get('dayHours') or {}
        day_hours += sum(_num(dh.get(name)) for name in DAY_HOUR_FIELDS)
    pikett = overtime3 = 0.0
    for entry in payload.get('pikett') or []:
        if entry.get('isOvertime3'):
            overtime3 += _num(entry.get('hours'))
        else:
            pikett += _num(entry.get('hours'))
    kom_total = kom + regie + fehler
    return {
        'komHours': _r(kom_total),
        'regieHours': _r(regie),
        'fehlerHours': _r(fehler),
        'dayHours': _r(day_hours),
        'pikettHours': _r(pikett),
        'overtime3Hours': _r(overtime3),
        'totalHours': _r(kom_total + day_hours + pikett + overtime3),
    }


# ─── vacation / absences ──────────────────────────────────────────────────────

def vacation_fraction(hours_worked: float) -> float:
    if hours_worked <= 0:
        return 1.0
    if hours_worked < DAILY_SOLL:
        return 0.5
    return 0.0


def used_vacation_days(days: Dict[str, Dict[str, Any]], year: int) -> float:
    total = 0.0
    for key, record in days.items():
        d = dates.try_parse_date_key(key)
        if d is None or d.year != year or not dates.is_workday(d):
            continue
        if not (record.get('flags') or {}).get('ferien'):
            continue
        if dates.is_bern_holiday(d):
            continue
        total += vacation_fraction(day_work_hours(record))
    return total


def absence_days_in_year(absence: Dict[str, Any], year: int) -> float:
    """Days of one absence request falling into *year*.

    An explicit ``days`` value is only trusted when the whole request lies in
    that year; otherwise Monday–Friday are counted.
    """
    rng = dates.normalize_range(absence.get('from', ''), absence.get('to', ''))
    if rng is None:
        return 0
    start, end = rng
    year_start, year_end = date(year, 1, 1), date(year, 12, 31)
    if not dates.ranges_overlap(start, end, year_start, year_end):
        return 0
    explicit = absence.get('days')
    if (isinstance(explicit, (int, float)) and explicit > 0
            and start.year == end.year == year):
        return explicit
    lo, hi = max(start, year_start), min(end, year_end)
    return sum(1 for d in dates.iter_days(lo, hi) if dates.is_workday(d))


# ─── yearly balance ───────────────────────────────────────────────────────────

def compute_year_balance(submissions: Iterable[Dict[str, Any]], year: int,
                         configs: Optional[Dict[int, YearConfig]] = None) -> Dict[str, Any]:
    """Balances for *year* from a worker's latest submission per month.

    ÜZ balances are lifetime values (all years seen), Vorarbeit and vacation
    refer to *year* only.
    """
    configs = configs if configs is not None else DEFAULT_YEAR_CONFIG
    ordered = sorted(submissions, key=lambda s: s.get('sentAt', ''))

    all_days: Dict[str, Dict[str, Any]] = {}
    pikett: List[Dict[str, Any]] = []
    absences: Dict[str, Dict[str, Any]] = {}
    for submission in ordered:
        all_days.update(submission.get('days') or {})
        pikett.extend(submission.get('pikett') or [])
        for absence in submission.get('absences') or []:
            absences[absence.get('id')] = absence

    per_year: Dict[int, Dict[str, float]] = {}
    for key, record in all_days.items():
        d = dates.try_parse_date_key(key)
        if d is None:
            continue
        bucket = per_year.setdefault(d.year, {'net': 0.0, 'positive': 0.0})
        worked = day_work_hours(record)
        flags = record.get('flags') or {}
        has_hours = worked > 0
        if not has_hours and not any(bool(v) for v in flags.values()):
            continue
        if flags.get('ferien'):
            diff = worked - DAILY_SOLL if worked > DAILY_SOLL else 0.0
        else:
            diff = worked - DAILY_SOLL if has_hours else 0.0
        bucket['net'] += diff
        if diff > 0:
            bucket['positive'] += diff

    net_all = sum(b['net'] for b in per_year.values())
    vorarbeit_all = sum(
        min(max(b['positive'], 0.0), config_for(configs, y).vorarbeitRequired)
        for y, b in per_year.items()
    )
    cfg = config_for(configs, year)
    ue_z2 = sum(_num(e.get('hours')) for e in pikett if not e.get('isOvertime3') and _num(e.get('hours')) > 0)
    ue_z3 = sum(_num(e.get('hours')) for e in pikett if e.get('isOvertime3') and _num(e.get('hours')) > 0)

    selected = per_year.get(year, {'net': 0.0, 'positive': 0.0})
    vorarbeit_filled = min(max(selected['positive'], 0.0), cfg.vorarbeitRequired)

    used = used_vacation_days(all_days, year)
    entitlement = cfg.vacationDaysPerYear + cfg.vacationCarryInDays

    absence_rows = []
    for absence in absences.values():
        in_year = absence_days_in_year(absence, year)
        if not in_year:
            continue
        absence_rows.append({
            'id': absence.get('id'),
            'type': absence.get('type', ''),
            'from': absence.get('from'),
            'to': absence.get('to'),
            'status': absence.get('status', 'pending'),
            'daysInYear': in_year,
        })
    absence_rows.sort(key=lambda a: (a['from'] or '', a['id'] or ''))

    return {
        'year': year,
        'ueZ1': _r(cfg.ueZ1CarryIn + net_all - vorarbeit_all),
        'ueZ2': _r(cfg.ueZ2CarryIn + ue_z2),
        'ueZ3': _r(cfg.ueZ3CarryIn + ue_z3),
        'vorarbeit': {'filled': _r(vorarbeit_filled), 'required': _r(cfg.vorarbeitRequired)},
        'vacation': {
            'usedDays': used,
            'entitlementDays': entitlement,
            'remainingDays': entitlement - used,
        },
        'absences': absence_rows,
        'perYear': {str(y): {'net': _r(b['net']), 'positive': _r(b['positive'])} for y, b in sorted(per_year.items())},
    }
