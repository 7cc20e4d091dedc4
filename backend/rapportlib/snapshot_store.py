"""
Snapshot store: one immutable JSON document per transmitted month, plus an
append-only metadata index per worker.

Layout below the store root::

    <worker>/index.json          append-only list of submission metadata
    <worker>/<submission id>.json

"Latest for month" is the index entry with the greatest ``sentAt`` among the
entries for that (year, monthIndex); equal timestamps fall back to index order.
"""
import logging
import os
import threading
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import NotFound, PersistenceFailure, StoreCorrupt
from .models import check_worker_id
from .storage import JsonDocument, KeyedLocks, atomic_write_json, quarantined_copies, read_json

_logger = logging.getLogger(__name__)

Submission = Dict[str, Any]
IndexEntry = Dict[str, Any]
MonthKey = Tuple[int, int]

INDEX_FILE = 'index.json'


def month_key(entry: Dict[str, Any]) -> MonthKey:
    return int(entry['year']), int(entry['monthIndex'])


def index_meta(submission: Submission) -> IndexEntry:
    """Metadata row for the per-worker index."""
    return {
        'id': submission['id'],
        'year': submission['year'],
        'monthIndex': submission['monthIndex'],
        'monthLabel': submission.get('monthLabel', ''),
        'sentAt': submission['sentAt'],
        'teamId': submission.get('teamId'),
        'file': f"{submission['id']}.json",
        'totals': submission.get('totals', {}),
        'locked': bool(submission.get('_lockInfo')),
    }


def latest_by_month(entries: List[IndexEntry]) -> Dict[MonthKey, IndexEntry]:
    """Single pass over the index: newest entry per (year, monthIndex)."""
    best: Dict[MonthKey, Tuple[Tuple[str, int], IndexEntry]] = {}
    for pos, entry in enumerate(entries):
        key = month_key(entry)
        rank = (entry.get('sentAt', ''), pos)
        current = best.get(key)
        if current is None or rank > current[0]:
            best[key] = (rank, entry)
    return {k: v[1] for k, v in sorted(best.items())}


class SnapshotStore:
    def __init__(self, root: str, locks: Optional[KeyedLocks] = None):
        self.root = root
        self._locks = locks or KeyedLocks()
        self._docs: Dict[str, JsonDocument] = {}
        self._docs_guard = threading.Lock()

    # ── lifecycle ────────────────────────────────────────────
    def open(self) -> None:
        os.makedirs(self.root, exist_ok=True)
        _logger.info("Snapshot store opened: %s (%d workers)", self.root, len(self.list_workers()))

    def close(self) -> None:
        with self._docs_guard:
            self._docs.clear()

    # ── paths ────────────────────────────────────────────────
    def _worker_dir(self, worker: str) -> str:
        return os.path.join(self.root, check_worker_id(worker))

    def _snapshot_path(self, worker: str, submission_id: str) -> str:
        if not submission_id or '/' in submission_id or '\\' in submission_id or submission_id.startswith('.'):
            raise NotFound(f"Ungültige Übermittlungs-ID: {submission_id!r}")
        return os.path.join(self._worker_dir(worker), f"{submission_id}.json")

    def _index_doc(self, worker: str) -> JsonDocument:
        with self._docs_guard:
            doc = self._docs.get(worker)
            if doc is None:
                doc = JsonDocument(os.path.join(self._worker_dir(worker), INDEX_FILE), list, StoreCorrupt)
                self._docs[worker] = doc
            return doc

    def lock_for(self, worker: str):
        """Context manager serializing writers of one worker's snapshots."""
        return self._locks.hold('snapshots', worker)

    # ── reads ────────────────────────────────────────────────
    def list_workers(self) -> List[str]:
        """Workers with an index, including those whose index sits in quarantine."""
        if not os.path.isdir(self.root):
            return []
        workers = []
        for name in os.listdir(self.root):
            index_path = os.path.join(self.root, name, INDEX_FILE)
            if os.path.isfile(index_path) or quarantined_copies(index_path):
                workers.append(name)
        return sorted(workers)

    def list_index(self, worker: str) -> List[IndexEntry]:
        entries = self._index_doc(worker).load()
        if not isinstance(entries, list):
            raise StoreCorrupt(f"Index von {worker} hat ein unerwartetes Format")
        return entries

    def latest_per_month(self, worker: str) -> Dict[MonthKey, IndexEntry]:
        return latest_by_month(self.list_index(worker))

    def latest_meta_for_month(self, worker: str, year: int, month_index: int) -> Optional[IndexEntry]:
        return self.latest_per_month(worker).get((year, month_index))

    def load_by_id(self, worker: str, submission_id: str) -> Optional[Submission]:
        path = self._snapshot_path(worker, submission_id)
        if not os.path.exists(path):
            return None
        return read_json(path, lambda: None, StoreCorrupt)

    def load_latest_for_month(self, worker: str, year: int, month_index: int) -> Optional[Submission]:
        meta = self.latest_meta_for_month(worker, year, month_index)
        if meta is None:
            return None
        submission = self.load_by_id(worker, meta['id'])
        if submission is None:
            raise StoreCorrupt(
                f"Übermittlung {meta['id']} von {worker} ist indexiert, aber die Datei fehlt"
            )
        return submission

    def iter_latest_snapshots(self, worker: str) -> Iterator[Submission]:
        for (year, month_index) in self.latest_per_month(worker):
            yield self.load_latest_for_month(worker, year, month_index)

    def iter_all_snapshots(self, worker: str) -> Iterator[Submission]:
        for entry in self.list_index(worker):
            submission = self.load_by_id(worker, entry['id'])
            if submission is not None:
                yield submission

    def worker_team(self, worker: str) -> Optional[str]:
        entries = self.list_index(worker)
        if not entries:
            return None
        newest = max(enumerate(entries), key=lambda pe: (pe[1].get('sentAt', ''), pe[0]))[1]
        return newest.get('teamId')

    # ── writes ───────────────────────────────────────────────
    def allocate_id(self, worker: str, year: int, month_index: int, epoch_ms: int) -> str:
        """``YYYY-MM-<epoch ms>``; bumped until unused."""
        taken = {e['id'] for e in self.list_index(worker)}
        stamp = epoch_ms
        while True:
            candidate = f"{year:04d}-{month_index + 1:02d}-{stamp}"
            if candidate not in taken and not os.path.exists(self._snapshot_path(worker, candidate)):
                return candidate
            stamp += 1

    def write_snapshot(self, worker: str, submission: Submission) -> str:
        path = self._snapshot_path(worker, submission['id'])
        if os.path.exists(path):
            raise PersistenceFailure(f"Übermittlung {submission['id']} existiert bereits")
        try:
            atomic_write_json(path, submission)
        except OSError as exc:
            raise PersistenceFailure(f"Übermittlung konnte nicht gespeichert werden: {exc}") from exc
        return path

    def discard_snapshot(self, worker: str, submission_id: str) -> bool:
        """Remove a snapshot that never became part of the index (rollback only)."""
        path = self._snapshot_path(worker, submission_id)
        try:
            os.unlink(path)
        except FileNotFoundError:
            return False
        _logger.warning("Rolled back snapshot %s/%s", worker, submission_id)
        return True

    def append_index(self, worker: str, meta: IndexEntry) -> None:
        with self.lock_for(worker):
            doc = self._index_doc(worker)
            entries = self.list_index(worker)
            entries.append(meta)
            doc.save(entries)

    def append(self, worker: str, submission: Submission) -> str:
        """Persist *submission* and index it. Either both happen or neither."""
        with self.lock_for(worker):
            self.write_snapshot(worker, submission)
            try:
                self.append_index(worker, index_meta(submission))
            except Exception as exc:
                self.discard_snapshot(worker, submission['id'])
                if isinstance(exc, (PersistenceFailure, StoreCorrupt)):
                    raise
                raise PersistenceFailure(f"Index von {worker} konnte nicht geschrieben werden: {exc}") from exc
        return submission['id']
