"""Archive flags for cost objects: team -> komNr -> {archived, archivedAt, archivedBy}."""
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from .errors import StoreCorrupt
from .models import normalize_kom_nr
from .storage import JsonDocument, KeyedLocks

_logger = logging.getLogger(__name__)


class ArchiveStore:
    def __init__(self, path: str, clock: Optional[Callable[[], datetime]] = None,
                 locks: Optional[KeyedLocks] = None):
        self.path = path
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks = locks or KeyedLocks()
        self._doc = JsonDocument(path, dict, StoreCorrupt)

    def open(self) -> None:
        try:
            self._doc.load()
        except StoreCorrupt as exc:
            _logger.error("Archive flags unusable: %s", exc.message)

    def close(self) -> None:
        self._doc.invalidate()

    def archived_for_team(self, team: str) -> Dict[str, dict]:
        return {k: v for k, v in self._doc.load().get(team, {}).items() if v.get('archived')}

    def is_archived(self, team: str, kom_nr: str) -> bool:
        return normalize_kom_nr(kom_nr) in self.archived_for_team(team)

    def set_archived(self, team: str, kom_nr: str, archived: bool, actor: str) -> dict:
        kom = normalize_kom_nr(kom_nr)
        with self._locks.hold('archive'):
            data = self._doc.load()
            team_flags = data.setdefault(team, {})
            if archived:
                meta = {
                    'archived': True,
                    'archivedAt': self._clock().isoformat(timespec='seconds'),
                    'archivedBy': actor,
                }
                team_flags[kom] = meta
            else:
                team_flags.pop(kom, None)
                if not team_flags:
                    data.pop(team, None)
                meta = {'archived': False, 'archivedAt': None, 'archivedBy': None}
            self._doc.save(data)
        _logger.info("Cost object %s/%s archived=%s by %s", team, kom, archived, actor)
        return meta
