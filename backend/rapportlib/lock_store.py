"""
Week lock registry: worker -> "YYYY-Wn" -> {locked, lockedAt, lockedBy}.

A lock freezes a calendar week of a worker's data. The registry is read on
every transmission, so an unreadable registry must never degrade to "no
locks": it is quarantined and every read fails until an administrator
restores a valid file.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Set

from . import dates
from .errors import LockStoreCorrupt
from .storage import JsonDocument, KeyedLocks, quarantine

_logger = logging.getLogger(__name__)

LockMeta = Dict[str, object]

UNLOCKED: LockMeta = {'locked': False, 'lockedAt': None, 'lockedBy': None}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class LockStore:
    def __init__(self, path: str, clock: Optional[Callable[[], datetime]] = None,
                 locks: Optional[KeyedLocks] = None):
        self.path = path
        self._clock = clock or _utc_now
        self._locks = locks or KeyedLocks()
        self._doc = JsonDocument(path, dict, LockStoreCorrupt)

    # ── lifecycle ────────────────────────────────────────────
    def open(self) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        try:
            self._read()
        except LockStoreCorrupt as exc:
            # reads keep failing until the registry is restored
            _logger.error("Week lock registry unusable: %s", exc.message)
            return
        _logger.info("Week lock registry opened: %s", self.path)

    def close(self) -> None:
        self._doc.invalidate()

    # ── reads ────────────────────────────────────────────────
    def _read(self) -> Dict[str, Dict[str, LockMeta]]:
        data = self._doc.load()
        if not isinstance(data, dict) or not all(isinstance(v, dict) for v in data.values()):
            self._doc.invalidate()
            target = quarantine(self.path)
            raise LockStoreCorrupt(
                "Sperr-Registry hat ein unerwartetes Format", path=self.path, quarantined_to=target
            )
        return data

    def get_locks(self, worker: str) -> Dict[str, LockMeta]:
        """All active locks of one worker, keyed by week key."""
        return {k: v for k, v in self._read().get(worker, {}).items() if v.get('locked')}

    def all_locks(self) -> Dict[str, Dict[str, LockMeta]]:
        return self._read()

    def get_lock(self, worker: str, week_year: int, week: int) -> LockMeta:
        meta = self._read().get(worker, {}).get(dates.week_key(week_year, week))
        if meta and meta.get('locked'):
            return dict(meta)
        return dict(UNLOCKED)

    def is_locked(self, worker: str, week_year: int, week: int) -> bool:
        return bool(self.get_lock(worker, week_year, week)['locked'])

    def locked_dates(self, worker: str, year: int, month_index: int) -> Set[str]:
        """Every date of every locked ISO week that touches the given month."""
        worker_locks = self.get_locks(worker)
        result: Set[str] = set()
        for week_year, week in dates.weeks_in_month(year, month_index):
            if dates.week_key(week_year, week) in worker_locks:
                result.update(dates.date_key(d) for d in dates.week_dates(week_year, week))
        return result

    def locked_weeks(self, worker: str, year: int, month_index: int) -> list:
        worker_locks = self.get_locks(worker)
        return [
            dates.week_key(wy, wk)
            for wy, wk in dates.weeks_in_month(year, month_index)
            if dates.week_key(wy, wk) in worker_locks
        ]

    # ── writes ───────────────────────────────────────────────
    def set_lock(self, worker: str, week_year: int, week: int, locked: bool, actor: str) -> LockMeta:
        # validates the week; raises ValueError for e.g. week 53 in a 52-week year
        dates.week_dates(week_year, week)
        key = dates.week_key(week_year, week)
        with self._locks.hold('week_locks'):
            data = self._read()
            worker_locks = data.setdefault(worker, {})
            if locked:
                current = worker_locks.get(key)
                if current and current.get('locked'):
                    return dict(current)
                meta = {'locked': True, 'lockedAt': _iso(self._clock()), 'lockedBy': actor}
                worker_locks[key] = meta
            else:
                if key not in worker_locks:
                    return dict(UNLOCKED)
                worker_locks.pop(key)
                if not worker_locks:
                    data.pop(worker, None)
                meta = dict(UNLOCKED)
            self._doc.save(data)
        _logger.info("Week lock %s/%s set to %s by %s", worker, key, locked, actor)
        return dict(meta)
