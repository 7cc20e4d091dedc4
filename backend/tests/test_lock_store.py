"""Tests for the week lock registry."""
import json
import os

import pytest

from rapportlib.errors import LockStoreCorrupt
from rapportlib.lock_store import LockStore
from rapportlib.storage import quarantined_copies

from conftest import TickingClock


@pytest.fixture
def store(tmp_path):
    s = LockStore(str(tmp_path / "week_locks.json"), clock=TickingClock())
    s.open()
    return s


class TestSetLock:

    def test_unlocked_by_default(self, store):
        assert store.is_locked('hans', 2025, 10) is False
        assert store.get_lock('hans', 2025, 10) == {'locked': False, 'lockedAt': None, 'lockedBy': None}

    def test_lock_and_read_back(self, store):
        meta = store.set_lock('hans', 2025, 10, True, 'admin')
        assert meta['locked'] is True
        assert meta['lockedBy'] == 'admin'
        assert meta['lockedAt'].endswith('Z')
        assert store.is_locked('hans', 2025, 10)
        assert not store.is_locked('urs', 2025, 10)
        assert list(store.get_locks('hans')) == ['2025-W10']

    def test_week_key_is_unpadded(self, store, tmp_path):
        store.set_lock('hans', 2025, 2, True, 'admin')
        with open(str(tmp_path / "week_locks.json"), encoding='utf-8') as f:
            assert '2025-W2' in json.load(f)['hans']

    def test_relock_keeps_original_meta(self, store):
        first = store.set_lock('hans', 2025, 10, True, 'admin')
        second = store.set_lock('hans', 2025, 10, True, 'other')
        assert second == first

    def test_unlock_removes_entry(self, store):
        store.set_lock('hans', 2025, 10, True, 'admin')
        meta = store.set_lock('hans', 2025, 10, False, 'admin')
        assert meta == {'locked': False, 'lockedAt': None, 'lockedBy': None}
        assert store.get_locks('hans') == {}
        assert 'hans' not in store.all_locks()

    def test_invalid_week_raises(self, store):
        # 2025 has 52 ISO weeks
        with pytest.raises(ValueError):
            store.set_lock('hans', 2025, 53, True, 'admin')

    def test_persists_across_instances(self, store, tmp_path):
        store.set_lock('hans', 2025, 10, True, 'admin')
        reopened = LockStore(str(tmp_path / "week_locks.json"))
        reopened.open()
        assert reopened.is_locked('hans', 2025, 10)


class TestLockedDates:

    def test_locked_week_covers_all_seven_days(self, store):
        store.set_lock('hans', 2025, 10, True, 'admin')
        assert store.locked_dates('hans', 2025, 2) == {
            '2025-03-03', '2025-03-04', '2025-03-05', '2025-03-06',
            '2025-03-07', '2025-03-08', '2025-03-09',
        }

    def test_week_spanning_month_boundary(self, store):
        # ISO week 9 of 2025 runs from 24 Feb to 2 Mar
        store.set_lock('hans', 2025, 9, True, 'admin')
        dates_march = store.locked_dates('hans', 2025, 2)
        assert '2025-03-01' in dates_march
        assert '2025-02-24' in dates_march
        assert store.locked_weeks('hans', 2025, 2) == ['2025-W9']

    def test_week_outside_month_ignored(self, store):
        store.set_lock('hans', 2025, 20, True, 'admin')
        assert store.locked_dates('hans', 2025, 2) == set()

    def test_iso_week_year_differs_from_calendar_year(self, store):
        # 29 Dec 2025 .. 4 Jan 2026 is week 1 of 2026
        store.set_lock('hans', 2026, 1, True, 'admin')
        assert '2025-12-31' in store.locked_dates('hans', 2025, 11)
        assert '2026-01-02' in store.locked_dates('hans', 2026, 0)


class TestCorruption:

    def test_corrupt_file_raises_and_is_preserved(self, store, tmp_path):
        path = str(tmp_path / "week_locks.json")
        store.set_lock('hans', 2025, 10, True, 'admin')
        with open(path, 'w', encoding='utf-8') as f:
            f.write('{"hans": {"2025-W10": ')
        with pytest.raises(LockStoreCorrupt):
            store.is_locked('hans', 2025, 10)
        copies = quarantined_copies(path)
        assert len(copies) == 1
        with open(copies[0], encoding='utf-8') as f:
            assert f.read() == '{"hans": {"2025-W10": '

    def test_quarantined_registry_is_not_treated_as_empty(self, store, tmp_path):
        path = str(tmp_path / "week_locks.json")
        with open(path, 'w', encoding='utf-8') as f:
            f.write('garbage')
        with pytest.raises(LockStoreCorrupt):
            store.locked_dates('hans', 2025, 2)
        assert not os.path.exists(path)
        # the file is gone but a quarantined copy exists: still an error
        with pytest.raises(LockStoreCorrupt):
            store.locked_dates('hans', 2025, 2)
        with pytest.raises(LockStoreCorrupt):
            store.set_lock('hans', 2025, 10, True, 'admin')

    def test_restored_registry_is_readable_again(self, store, tmp_path):
        path = str(tmp_path / "week_locks.json")
        with open(path, 'w', encoding='utf-8') as f:
            f.write('garbage')
        with pytest.raises(LockStoreCorrupt):
            store.get_locks('hans')
        with open(path, 'w', encoding='utf-8') as f:
            json.dump({'hans': {'2025-W10': {'locked': True, 'lockedAt': None, 'lockedBy': 'x'}}}, f)
        assert store.is_locked('hans', 2025, 10)

    def test_wrong_shape_is_quarantined(self, store, tmp_path):
        path = str(tmp_path / "week_locks.json")
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(["not", "a", "map"], f)
        with pytest.raises(LockStoreCorrupt):
            store.get_locks('hans')
        assert quarantined_copies(path)
