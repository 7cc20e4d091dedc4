"""
Payload merge for locked weeks ("freeze, don't reject").

A worker may transmit a month that contains edits to weeks an administrator
has already locked (stale client state, usually). Instead of bouncing the
whole transmission, the locked parts are silently restored from the previous
submission and the rest of the month goes through.
"""
import copy
from typing import Any, Dict, Iterable, List, Optional, Set

from . import dates

Payload = Dict[str, Any]


def _absence_touches(absence: Dict[str, Any], locked: Set[str]) -> bool:
    rng = dates.normalize_range(absence.get('from', ''), absence.get('to', ''))
    if rng is None:
        return False
    start, end = dates.date_key(rng[0]), dates.date_key(rng[1])
    # date keys sort chronologically
    return any(start <= d <= end for d in locked)


def _merge_days(new_days: Dict[str, Any], old_days: Dict[str, Any], locked: Set[str]):
    merged = {k: v for k, v in new_days.items() if k not in locked}
    frozen = []
    for key in sorted(locked):
        if key in old_days:
            merged[key] = copy.deepcopy(old_days[key])
        if new_days.get(key) != old_days.get(key):
            frozen.append(key)
    return dict(sorted(merged.items())), frozen


def _merge_pikett(new_entries: List[dict], old_entries: List[dict], locked: Set[str]):
    kept = [copy.deepcopy(e) for e in new_entries if e.get('date') not in locked]
    restored = [copy.deepcopy(e) for e in old_entries if e.get('date') in locked]
    dropped = [e for e in new_entries if e.get('date') in locked]
    changed = sum(1 for e in dropped if e not in restored) + sum(1 for e in restored if e not in dropped)
    merged = kept + restored
    # stable: entries of one date keep their relative order
    merged.sort(key=lambda e: e.get('date', ''))
    return merged, changed


def _merge_absences(new_absences: List[dict], old_absences: List[dict], locked: Set[str]):
    frozen_old = [a for a in old_absences if _absence_touches(a, locked)]
    frozen_ids = {a.get('id') for a in frozen_old}
    merged: List[dict] = []
    seen: Set[str] = set()
    touched: List[str] = []
    for absence in new_absences:
        aid = absence.get('id')
        if aid in frozen_ids:
            # previous version wins
            continue
        if _absence_touches(absence, locked):
            touched.append(aid)
            continue
        if aid in seen:
            continue
        seen.add(aid)
        merged.append(copy.deepcopy(absence))
    new_by_id = {a.get('id'): a for a in new_absences}
    for absence in frozen_old:
        aid = absence.get('id')
        if aid in seen:
            continue
        seen.add(aid)
        merged.append(copy.deepcopy(absence))
        if new_by_id.get(aid) != absence:
            touched.append(aid)
    return merged, sorted(set(touched))


def merge_locked_payload(new_payload: Payload, previous: Optional[Payload],
                         locked_dates: Iterable[str]) -> Payload:
    """Force every locked date of *new_payload* back to *previous*.

    Pure: neither input is modified, the result is a fresh structure. Without
    locked dates or without a previous submission the payload passes through.
    """
    locked = set(locked_dates or ())
    result = copy.deepcopy(new_payload)
    result.pop('_lockInfo', None)
    if not locked or previous is None:
        return result

    days, frozen_days = _merge_days(new_payload.get('days') or {}, previous.get('days') or {}, locked)
    pikett, pikett_changed = _merge_pikett(new_payload.get('pikett') or [], previous.get('pikett') or [], locked)
    absences, frozen_absences = _merge_absences(
        new_payload.get('absences') or [], previous.get('absences') or [], locked
    )
    result['days'] = days
    result['pikett'] = pikett
    result['absences'] = absences
    result['_lockInfo'] = {
        'lockedDates': sorted(locked),
        'frozenDays': frozen_days,
        'frozenPikett': pikett_changed,
        'frozenAbsences': frozen_absences,
    }
    return result
