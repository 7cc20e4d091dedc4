"""
Team-wide hour totals per cost object (Kommission / Anlage).

Workers resubmit the same month many times; the snapshot store keeps every
version but only the latest one counts. The index therefore never sums
snapshots. Each transmission replaces the worker's contribution for that month
by applying a signed delta: subtract the old contribution map, add the new one.

Index document::

    {"version": 1,
     "teams": {
        <team>: {
          "costObjects": {<komNr>: {"totalHours": float,
                                    "hoursByOperation": {bucket: float},
                                    "hoursByWorker": {worker: float},
                                    "lastActivityDate": "YYYY-MM-DD"}},
          "activity": {<komNr>: "YYYY-MM-DD"}}}}

``activity`` is the latest date ever booked on a cost object by any accepted
transmission of the team. It only moves forward and survives pruning, and
every entry's ``lastActivityDate`` mirrors it.
"""
import copy
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from .errors import StoreCorrupt
from .models import OPERATION_CODES
from .storage import JsonDocument, KeyedLocks

_logger = logging.getLogger(__name__)

ContributionMap = Dict[str, Dict[str, Any]]
Index = Dict[str, Any]

INDEX_VERSION = 1
EPSILON = 1e-9


def empty_index() -> Index:
    return {'version': INDEX_VERSION, 'teams': {}}


def _r(value: float) -> float:
    result = round(value, 6)
    return 0.0 if abs(result) < EPSILON else result


# ─── contribution extraction ──────────────────────────────────────────────────

def extract_contributions(submission: Optional[Dict[str, Any]]) -> ContributionMap:
    """Hours per cost object booked in one submission.

    ``entries`` are split by operation code (option1..option6), special
    entries go to the ``regie`` / ``fehler`` buckets. Bookings without a
    Kommissionsnummer cannot be attributed and are skipped.
    """
    result: ContributionMap = {}
    if not submission:
        return result

    def book(kom: str, bucket: str, hours: float, day: str) -> None:
        if not kom or not isinstance(hours, (int, float)) or hours <= 0:
            return
        slot = result.setdefault(kom, {'total': 0.0, 'byOperation': {}, 'lastDate': None})
        slot['total'] = _r(slot['total'] + hours)
        slot['byOperation'][bucket] = _r(slot['byOperation'].get(bucket, 0.0) + hours)
        if slot['lastDate'] is None or day > slot['lastDate']:
            slot['lastDate'] = day

    for day, record in sorted((submission.get('days') or {}).items()):
        for entry in record.get('entries') or []:
            for code, hours in (entry.get('hours') or {}).items():
                if code in OPERATION_CODES:
                    book(entry.get('komNr', ''), code, hours, day)
        for special in record.get('specialEntries') or []:
            book(special.get('komNr', ''), special.get('type', 'regie'), special.get('hours', 0), day)
    return result


# ─── delta application ────────────────────────────────────────────────────────

def _fresh_entry() -> Dict[str, Any]:
    return {'totalHours': 0.0, 'hoursByOperation': {}, 'hoursByWorker': {}, 'lastActivityDate': None}


def _shift(bucket_map: Dict[str, float], key: str, diff: float) -> None:
    value = _r(bucket_map.get(key, 0.0) + diff)
    if value == 0.0:
        bucket_map.pop(key, None)
    else:
        bucket_map[key] = value


def apply_delta(index: Index, team: str, worker: str,
                new_map: ContributionMap, old_map: ContributionMap) -> Index:
    """Replace *worker*'s contribution *old_map* by *new_map* in *team*.

    Returns a new index; *index* is left untouched.
    """
    result = copy.deepcopy(index) if index else empty_index()
    teams = result.setdefault('teams', {})
    team_doc = teams.setdefault(team, {'costObjects': {}, 'activity': {}})
    cost_objects = team_doc.setdefault('costObjects', {})
    activity = team_doc.setdefault('activity', {})

    for kom in sorted(set(new_map or {}) | set(old_map or {})):
        new = (new_map or {}).get(kom) or {}
        old = (old_map or {}).get(kom) or {}
        entry = cost_objects.get(kom) or _fresh_entry()

        diff_total = new.get('total', 0.0) - old.get('total', 0.0)
        entry['totalHours'] = _r(entry['totalHours'] + diff_total)

        new_ops = new.get('byOperation') or {}
        old_ops = old.get('byOperation') or {}
        for bucket in sorted(set(new_ops) | set(old_ops)):
            _shift(entry['hoursByOperation'], bucket, new_ops.get(bucket, 0.0) - old_ops.get(bucket, 0.0))
        _shift(entry['hoursByWorker'], worker, diff_total)

        last = new.get('lastDate')
        if last and (activity.get(kom) is None or last > activity[kom]):
            activity[kom] = last
        entry['lastActivityDate'] = activity.get(kom)

        if entry['totalHours'] <= EPSILON:
            cost_objects.pop(kom, None)
        else:
            cost_objects[kom] = entry

    if not cost_objects and not activity:
        teams.pop(team, None)
    return result


def hour_fields(index: Index) -> Dict[str, Dict[str, Any]]:
    """The index without activity marks: team -> komNr -> hour fields."""
    return {
        team: {
            kom: {k: v for k, v in entry.items() if k != 'lastActivityDate'}
            for kom, entry in doc.get('costObjects', {}).items()
        }
        for team, doc in (index or {}).get('teams', {}).items()
    }


# ─── full rebuild ─────────────────────────────────────────────────────────────

def rebuild_index(snapshot_store) -> Index:
    """Recompute the index from scratch out of the snapshot store.

    Hours come from every worker's latest submission per month; activity
    marks from every stored version, which is exactly what incremental
    application has seen.
    """
    index = empty_index()
    teams = index['teams']
    latest: list = []
    for worker in snapshot_store.list_workers():
        for submission in snapshot_store.iter_all_snapshots(worker):
            team = submission.get('teamId')
            if not team:
                continue
            activity = teams.setdefault(team, {'costObjects': {}, 'activity': {}})['activity']
            for kom, slot in extract_contributions(submission).items():
                if slot['lastDate'] and (activity.get(kom) is None or slot['lastDate'] > activity[kom]):
                    activity[kom] = slot['lastDate']
        for submission in snapshot_store.iter_latest_snapshots(worker):
            if submission.get('teamId'):
                latest.append((submission['teamId'], worker, submission))
    for team, worker, submission in latest:
        index = apply_delta(index, team, worker, extract_contributions(submission), {})
    for team in [t for t, doc in index['teams'].items() if not doc['costObjects'] and not doc['activity']]:
        index['teams'].pop(team)
    return index


# ─── persistence ──────────────────────────────────────────────────────────────

class AggregationStore:
    def __init__(self, path: str, locks: Optional[KeyedLocks] = None):
        self.path = path
        self._locks = locks or KeyedLocks()
        self._doc = JsonDocument(path, empty_index, StoreCorrupt)

    def open(self) -> None:
        try:
            index = self.load()
        except StoreCorrupt as exc:
            # reads keep failing until an admin rebuild writes a fresh index
            _logger.error("Aggregation index unusable, rebuild required: %s", exc.message)
            return
        _logger.info("Aggregation index opened: %s (%d teams)", self.path, len(index['teams']))

    def close(self) -> None:
        self._doc.invalidate()

    def lock(self):
        return self._locks.hold('aggregation')

    def load(self) -> Index:
        index = self._doc.load()
        if not isinstance(index, dict) or not isinstance(index.get('teams'), dict):
            raise StoreCorrupt("Aggregationsindex hat ein unerwartetes Format", path=self.path)
        return index

    def save(self, index: Index) -> None:
        with self.lock():
            self._doc.save(index)

    def apply(self, team: str, worker: str, new_map: ContributionMap,
              old_map: ContributionMap) -> Tuple[Index, Index]:
        """Apply and persist one delta. Returns (pre-image, new index)."""
        with self.lock():
            before = self.load()
            after = apply_delta(before, team, worker, new_map, old_map)
            self._doc.save(after)
        return before, after

    def team_entries(self, team: str) -> Dict[str, Dict[str, Any]]:
        return self.load()['teams'].get(team, {}).get('costObjects', {})

    def teams(self) -> Iterable[str]:
        return sorted(self.load()['teams'])
