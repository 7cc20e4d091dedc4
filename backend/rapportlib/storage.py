"""
JSON document persistence for the ledger stores.

Write safety:
  • Every write goes to a temp file in the target directory, is fsync'ed and
    then moved into place with os.replace() – readers see either the old or
    the new document, never a partial one.
  • A document that exists but does not parse is moved aside to
    ``<name>.corrupt-<timestamp>`` and an error is raised. It is never treated
    as empty: JsonDocument keeps raising until a save() writes a valid
    document again.
  • Exclusive fcntl.flock() on a sidecar ``.lock`` file around writes, plus an
    in-process lock per (resource kind, key).
"""

import fcntl
import glob
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Type

from .errors import PersistenceFailure, StoreCorrupt

_logger = logging.getLogger(__name__)


# ─── atomic write ─────────────────────────────────────────────────────────────

def atomic_write_json(path: str, data: Any) -> None:
    """Serialize *data* to *path* via temp file + os.replace()."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def quarantine(path: str) -> str:
    """Move an unreadable document aside and return the new path."""
    stamp = datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%f')
    target = f"{path}.corrupt-{stamp}"
    os.replace(path, target)
    _logger.error("Quarantined unreadable document %s -> %s", path, target)
    return target


def quarantined_copies(path: str) -> list:
    return sorted(glob.glob(glob.escape(path) + '.corrupt-*'))


def read_json(path: str, default: Callable[[], Any],
              error_cls: Type[StoreCorrupt] = StoreCorrupt) -> Any:
    """Read a JSON document; missing → default(); unparsable → quarantine + raise."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            raw = f.read()
    except FileNotFoundError:
        return default()
    try:
        return json.loads(raw)
    except ValueError as exc:
        target = quarantine(path)
        raise error_cls(
            f"Datei {os.path.basename(path)} ist beschädigt und wurde nach "
            f"{os.path.basename(target)} verschoben: {exc}",
            path=path,
            quarantined_to=target,
        ) from exc


# ─── locking ──────────────────────────────────────────────────────────────────

@contextmanager
def exclusive_file_lock(path: str):
    """Hold an exclusive POSIX lock on ``<path>.lock`` for the duration of the block."""
    lock_path = path + '.lock'
    os.makedirs(os.path.dirname(os.path.abspath(lock_path)), exist_ok=True)
    with open(lock_path, 'a+b') as f:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


class KeyedLocks:
    """Registry of re-entrant locks, one per (resource kind, key)."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}

    def get(self, kind: str, key: str = '*') -> threading.RLock:
        with self._guard:
            lock = self._locks.get((kind, key))
            if lock is None:
                lock = threading.RLock()
                self._locks[(kind, key)] = lock
            return lock

    @contextmanager
    def hold(self, kind: str, key: str = '*'):
        lock = self.get(kind, key)
        with lock:
            yield


# ─── cached document ──────────────────────────────────────────────────────────

class JsonDocument:
    """One JSON file with an mtime-keyed read cache and atomic saves.

    Loads return deep copies so callers can never mutate the cached state.
    """

    def __init__(self, path: str, default: Callable[[], Any],
                 error_cls: Type[StoreCorrupt] = StoreCorrupt):
        self.path = path
        self._default = default
        self._error_cls = error_cls
        self._cache: Optional[Tuple[Tuple[int, int], str]] = None

    def _stamp(self) -> Optional[Tuple[int, int]]:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def pending_quarantine(self) -> Optional[str]:
        """Latest quarantined copy while no valid document has replaced it."""
        if self.exists():
            return None
        copies = quarantined_copies(self.path)
        return copies[-1] if copies else None

    def load(self) -> Any:
        stamp = self._stamp()
        if stamp is None:
            self._cache = None
            # a quarantined document is not an empty one; only save() clears this
            pending = self.pending_quarantine()
            if pending:
                raise self._error_cls(
                    f"Datei {os.path.basename(self.path)} ist in Quarantäne "
                    f"({os.path.basename(pending)}) und muss wiederhergestellt werden",
                    path=self.path,
                    quarantined_to=pending,
                )
            return self._default()
        if self._cache is not None and self._cache[0] == stamp:
            return json.loads(self._cache[1])
        data = read_json(self.path, self._default, self._error_cls)
        self._cache = (stamp, json.dumps(data))
        return data

    def save(self, data: Any) -> None:
        try:
            with exclusive_file_lock(self.path):
                atomic_write_json(self.path, data)
        except OSError as exc:
            raise PersistenceFailure(
                f"Speichern von {os.path.basename(self.path)} fehlgeschlagen: {exc}"
            ) from exc
        finally:
            self._cache = None

    def invalidate(self) -> None:
        self._cache = None
