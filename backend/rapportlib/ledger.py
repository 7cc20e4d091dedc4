"""
Submission ledger: the stores behind one data directory and the operations
the API exposes on top of them.

Data directory layout::

    week_locks.json              week lock registry
    submissions/<worker>/...     snapshot store
    aggregation_index.json       team cost-object totals
    cost_object_archive.json     archive flags
    year_config.json             optional per-year balance configuration

A transmission is either fully reflected (snapshot, index row and aggregation
delta) or not at all. The aggregation document is written before the index row
so that a failing index append can be compensated by restoring the previous
aggregation state.
"""
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from . import dates
from .aggregation import AggregationStore, apply_delta, extract_contributions, rebuild_index
from .archive_store import ArchiveStore
from .balances import DEFAULT_YEAR_CONFIG, compute_totals, compute_year_balance, load_year_config
from .errors import (
    AggregationInconsistency,
    Forbidden,
    NotFound,
    PayloadValidationError,
    PersistenceFailure,
)
from .lock_store import LockStore
from .merge import merge_locked_payload
from .models import OPERATION_LABELS, Identity, check_worker_id, normalize_kom_nr, validate_payload
from .overview import build_overview
from .snapshot_store import SnapshotStore, index_meta
from .storage import KeyedLocks

_logger = logging.getLogger(__name__)

STATUS_FILTERS = ('active', 'archived', 'all')


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_ms(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def _parse_iso_ms(value: Optional[str]) -> Optional[datetime]:
    try:
        return datetime.strptime(value, '%Y-%m-%dT%H:%M:%S.%fZ').replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


def _check_month(year: int, month_index: int) -> None:
    if not (2000 <= year <= 2100) or not (0 <= month_index <= 11):
        raise PayloadValidationError(f"Ungültiger Monat: {year}/{month_index}")


class SubmissionLedger:
    def __init__(self, data_dir: str, clock: Optional[Callable[[], datetime]] = None,
                 roster: Optional[Dict[str, str]] = None):
        self.data_dir = data_dir
        self._clock = clock or _utc_now
        # worker -> team as known to the auth setup
        self.roster: Dict[str, str] = dict(roster or {})
        self.locks = KeyedLocks()
        self.week_locks = LockStore(os.path.join(data_dir, 'week_locks.json'), self._clock, self.locks)
        self.snapshots = SnapshotStore(os.path.join(data_dir, 'submissions'), self.locks)
        self.aggregation = AggregationStore(os.path.join(data_dir, 'aggregation_index.json'), self.locks)
        self.archive = ArchiveStore(os.path.join(data_dir, 'cost_object_archive.json'), self._clock, self.locks)
        self.year_config_path = os.path.join(data_dir, 'year_config.json')
        self.year_configs = dict(DEFAULT_YEAR_CONFIG)

    # ── lifecycle ────────────────────────────────────────────
    def open(self) -> 'SubmissionLedger':
        os.makedirs(self.data_dir, exist_ok=True)
        self.week_locks.open()
        self.snapshots.open()
        self.aggregation.open()
        self.archive.open()
        self.year_configs = load_year_config(self.year_config_path)
        _logger.info("Ledger opened: %s", self.data_dir)
        return self

    def close(self) -> None:
        self.archive.close()
        self.aggregation.close()
        self.snapshots.close()
        self.week_locks.close()
        _logger.info("Ledger closed: %s", self.data_dir)

    def set_roster(self, roster: Dict[str, str]) -> None:
        self.roster = dict(roster)

    # ── permissions ──────────────────────────────────────────
    @staticmethod
    def _require_admin(identity: Identity) -> None:
        if not identity.is_admin:
            raise Forbidden("Nur für Administratoren")

    def _team_of(self, worker: str) -> Optional[str]:
        return self.roster.get(worker) or self.snapshots.worker_team(worker)

    def _resolve_worker(self, identity: Identity, worker: Optional[str]) -> str:
        """Workers see their own data; admins any worker of their team."""
        if not worker or worker == identity.worker_id:
            return identity.worker_id
        if not identity.is_admin:
            raise Forbidden("Zugriff nur auf eigene Daten erlaubt")
        check_worker_id(worker)
        team = self._team_of(worker)
        if team is None:
            raise NotFound(f"Mitarbeiter {worker} ist unbekannt")
        if team != identity.team_id:
            raise Forbidden(f"Mitarbeiter {worker} gehört nicht zum Team {identity.team_id}")
        return worker

    # ── transmission ─────────────────────────────────────────
    def transmit(self, identity: Identity, raw_payload: Any) -> Dict[str, Any]:
        payload = validate_payload(raw_payload)
        worker, team = identity.worker_id, identity.team_id
        year, month_index = payload['year'], payload['monthIndex']

        with self.snapshots.lock_for(worker), self.aggregation.lock():
            previous = self.snapshots.load_latest_for_month(worker, year, month_index)
            locked = self.week_locks.locked_dates(worker, year, month_index)
            merged = merge_locked_payload(payload, previous, locked)
            if '_lockInfo' in merged:
                merged['_lockInfo']['lockedWeeks'] = self.week_locks.locked_weeks(worker, year, month_index)

            now = self._next_sent_at(worker)
            submission_id = self.snapshots.allocate_id(worker, year, month_index, int(now.timestamp() * 1000))
            submission = dict(merged)
            submission.update({
                'id': submission_id,
                'workerId': worker,
                'teamId': team,
                'sentAt': _iso_ms(now),
                'totals': compute_totals(merged),
            })

            # a corrupt index must fail before anything is written
            before = self.aggregation.load()
            self.snapshots.write_snapshot(worker, submission)

            try:
                after = self._replace_contribution(before, worker, team, previous, submission)
                self.aggregation.save(after)
            except Exception as exc:
                self.snapshots.discard_snapshot(worker, submission_id)
                _logger.error("Aggregation update failed for %s/%s: %s", worker, submission_id, exc)
                raise AggregationInconsistency(
                    "Kostenstellen-Summen konnten nicht aktualisiert werden; Übermittlung verworfen"
                ) from exc

            try:
                self.snapshots.append_index(worker, index_meta(submission))
            except Exception as exc:
                self._compensate_index_failure(worker, submission_id, before, exc)

        _logger.info("Transmission %s stored for %s (%s/%s)", submission_id, worker, year, month_index + 1)
        return {
            'submissionId': submission_id,
            'sentAt': submission['sentAt'],
            'totals': submission['totals'],
            'lockInfo': submission.get('_lockInfo'),
        }

    def _next_sent_at(self, worker: str) -> datetime:
        """Clock time, pushed past the worker's newest sentAt if the clock went back."""
        now = self._clock()
        newest = max((e.get('sentAt', '') for e in self.snapshots.list_index(worker)), default=None)
        last = _parse_iso_ms(newest)
        if last is not None and now <= last:
            _logger.warning("Clock behind last transmission of %s (%s); sentAt bumped", worker, newest)
            now = last + timedelta(milliseconds=1)
        return now

    @staticmethod
    def _replace_contribution(index: Dict[str, Any], worker: str, team: str,
                              previous: Optional[Dict[str, Any]], submission: Dict[str, Any]) -> Dict[str, Any]:
        new_map = extract_contributions(submission)
        old_team = (previous or {}).get('teamId')
        old_map = extract_contributions(previous) if old_team else {}
        if old_team and old_team != team:
            index = apply_delta(index, old_team, worker, {}, old_map)
            return apply_delta(index, team, worker, new_map, {})
        return apply_delta(index, team, worker, new_map, old_map)

    def _compensate_index_failure(self, worker: str, submission_id: str,
                                  before: Dict[str, Any], exc: Exception) -> None:
        try:
            self.aggregation.save(before)
        except Exception as restore_exc:
            self.snapshots.discard_snapshot(worker, submission_id)
            _logger.critical(
                "Index append and aggregation restore failed for %s/%s: %s / %s",
                worker, submission_id, exc, restore_exc,
            )
            raise AggregationInconsistency(
                "Übermittlung verworfen, Kostenstellen-Summen sind inkonsistent; Neuaufbau erforderlich",
                rebuild_required=True,
            ) from restore_exc
        self.snapshots.discard_snapshot(worker, submission_id)
        if isinstance(exc, PersistenceFailure):
            raise exc
        raise PersistenceFailure(f"Übermittlung konnte nicht indexiert werden: {exc}") from exc

    # ── submissions ──────────────────────────────────────────
    def list_submissions(self, identity: Identity, worker: Optional[str] = None,
                         year: Optional[int] = None, month_index: Optional[int] = None) -> List[Dict[str, Any]]:
        worker = self._resolve_worker(identity, worker)
        entries = self.snapshots.list_index(worker)
        latest_ids = {e['id'] for e in self.snapshots.latest_per_month(worker).values()}
        rows = []
        for entry in entries:
            if year is not None and entry['year'] != year:
                continue
            if month_index is not None and entry['monthIndex'] != month_index:
                continue
            rows.append(dict(entry, isLatest=entry['id'] in latest_ids))
        rows.sort(key=lambda e: e.get('sentAt', ''), reverse=True)
        return rows

    def load_submission(self, identity: Identity, submission_id: str,
                        worker: Optional[str] = None) -> Dict[str, Any]:
        worker = self._resolve_worker(identity, worker)
        submission = self.snapshots.load_by_id(worker, submission_id)
        if submission is None:
            raise NotFound(f"Übermittlung {submission_id} nicht gefunden")
        return submission

    # ── overviews ────────────────────────────────────────────
    def _week_lock_meta(self, worker: str, overview: Dict[str, Any]) -> None:
        locks = self.week_locks.get_locks(worker)
        for week in overview['weeks']:
            meta = locks.get(week['weekKey']) or {}
            week['locked'] = bool(meta.get('locked'))
            week['lockedAt'] = meta.get('lockedAt')
            week['lockedBy'] = meta.get('lockedBy')

    def overview(self, identity: Identity, worker: Optional[str], year: int, month_index: int) -> Dict[str, Any]:
        _check_month(year, month_index)
        worker = self._resolve_worker(identity, worker)
        meta = self.snapshots.latest_meta_for_month(worker, year, month_index)
        submission = self.snapshots.load_latest_for_month(worker, year, month_index) if meta else None
        result = build_overview(submission, year, month_index)
        self._week_lock_meta(worker, result)
        result['workerId'] = worker
        result['submissionId'] = meta['id'] if meta else None
        result['sentAt'] = meta['sentAt'] if meta else None
        return result

    def team_overview(self, identity: Identity, year: int, month_index: int) -> Dict[str, Any]:
        self._require_admin(identity)
        _check_month(year, month_index)
        workers = []
        for worker in sorted(set(self.snapshots.list_workers()) | set(self.roster)):
            if self._team_of(worker) != identity.team_id:
                continue
            ov = self.overview(identity, worker, year, month_index)
            workers.append({
                'workerId': worker,
                'submissionId': ov['submissionId'],
                'sentAt': ov['sentAt'],
                'monthTotalHours': ov['monthTotalHours'],
                'missingDays': sum(w['missingDays'] for w in ov['weeks']),
                'weeks': [{k: v for k, v in w.items() if k != 'days'} for w in ov['weeks']],
            })
        return {'teamId': identity.team_id, 'year': year, 'monthIndex': month_index, 'workers': workers}

    def year_balance(self, identity: Identity, worker: Optional[str], year: int) -> Dict[str, Any]:
        if not (2000 <= year <= 2100):
            raise PayloadValidationError(f"Ungültiges Jahr: {year}")
        worker = self._resolve_worker(identity, worker)
        submissions = list(self.snapshots.iter_latest_snapshots(worker))
        result = compute_year_balance(submissions, year, self.year_configs)
        result['workerId'] = worker
        return result

    # ── week locks ───────────────────────────────────────────
    def week_locks_for(self, identity: Identity, worker: str) -> Dict[str, Any]:
        self._require_admin(identity)
        worker = self._resolve_worker(identity, worker)
        return self.week_locks.get_locks(worker)

    def set_week_lock(self, identity: Identity, worker: str, week_year: int, week: int,
                      locked: bool) -> Dict[str, Any]:
        self._require_admin(identity)
        worker = self._resolve_worker(identity, worker)
        try:
            dates.week_dates(week_year, week)
        except ValueError as exc:
            raise PayloadValidationError(f"Ungültige Kalenderwoche: {week_year}-W{week}") from exc
        meta = self.week_locks.set_lock(worker, week_year, week, locked, identity.worker_id)
        return dict(meta, workerId=worker, weekKey=dates.week_key(week_year, week))

    # ── cost objects ─────────────────────────────────────────
    def _cost_object_row(self, kom: str, entry: Dict[str, Any], flags: Dict[str, dict]) -> Dict[str, Any]:
        flag = flags.get(kom) or {}
        return {
            'komNr': kom,
            'totalHours': entry['totalHours'],
            'hoursByOperation': dict(entry.get('hoursByOperation') or {}),
            'hoursByWorker': dict(entry.get('hoursByWorker') or {}),
            'workerCount': len(entry.get('hoursByWorker') or {}),
            'lastActivityDate': entry.get('lastActivityDate'),
            'archived': bool(flag.get('archived')),
            'archivedAt': flag.get('archivedAt'),
            'archivedBy': flag.get('archivedBy'),
        }

    def cost_object_summary(self, identity: Identity, status_filter: str = 'active',
                            search_text: str = '') -> Dict[str, Any]:
        self._require_admin(identity)
        if status_filter not in STATUS_FILTERS:
            raise PayloadValidationError(f"Ungültiger Statusfilter: {status_filter}")
        needle = normalize_kom_nr(search_text).lower()
        flags = self.archive.archived_for_team(identity.team_id)
        rows = []
        for kom, entry in self.aggregation.team_entries(identity.team_id).items():
            archived = kom in flags
            if status_filter == 'active' and archived:
                continue
            if status_filter == 'archived' and not archived:
                continue
            if needle and needle not in kom.lower():
                continue
            rows.append(self._cost_object_row(kom, entry, flags))
        rows.sort(key=lambda r: r['komNr'])
        rows.sort(key=lambda r: r['lastActivityDate'] or '', reverse=True)
        return {
            'teamId': identity.team_id,
            'status': status_filter,
            'search': search_text,
            'count': len(rows),
            'totalHours': round(sum(r['totalHours'] for r in rows), 2),
            'costObjects': rows,
        }

    def cost_object_detail(self, identity: Identity, kom_nr: str) -> Dict[str, Any]:
        self._require_admin(identity)
        kom = normalize_kom_nr(kom_nr)
        entry = self.aggregation.team_entries(identity.team_id).get(kom)
        if entry is None:
            raise NotFound(f"Kostenstelle {kom} nicht gefunden")
        row = self._cost_object_row(kom, entry, self.archive.archived_for_team(identity.team_id))
        row['operations'] = [
            {'code': code, 'label': OPERATION_LABELS.get(code, code), 'hours': hours}
            for code, hours in sorted(row['hoursByOperation'].items())
        ]
        row['workers'] = [
            {'workerId': w, 'hours': h}
            for w, h in sorted(row['hoursByWorker'].items(), key=lambda wh: (-wh[1], wh[0]))
        ]
        return row

    def set_archived(self, identity: Identity, kom_nr: str, archived: bool) -> Dict[str, Any]:
        self._require_admin(identity)
        kom = normalize_kom_nr(kom_nr)
        if not kom:
            raise PayloadValidationError("Kommissionsnummer fehlt")
        if archived and kom not in self.aggregation.team_entries(identity.team_id):
            raise NotFound(f"Kostenstelle {kom} nicht gefunden")
        meta = self.archive.set_archived(identity.team_id, kom, archived, identity.worker_id)
        return dict(meta, komNr=kom)

    def rebuild(self, identity: Identity) -> Dict[str, Any]:
        self._require_admin(identity)
        with self.aggregation.lock():
            index = rebuild_index(self.snapshots)
            self.aggregation.save(index)
        teams = index['teams']
        summary = {
            'teams': len(teams),
            'costObjects': sum(len(doc['costObjects']) for doc in teams.values()),
        }
        _logger.info("Aggregation index rebuilt: %s", summary)
        return summary
