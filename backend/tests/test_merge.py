"""Tests for merging a new transmission with locked weeks of the previous one."""
import copy

from rapportlib.merge import merge_locked_payload

from conftest import day_record, make_payload

# ISO week 10 of 2025
WEEK_10 = {'2025-03-03', '2025-03-04', '2025-03-05', '2025-03-06', '2025-03-07', '2025-03-08', '2025-03-09'}


def _absence(aid, start, end, status='accepted', type_='ferien'):
    return {'id': aid, 'type': type_, 'from': start, 'to': end, 'comment': '', 'status': status}


class TestPassThrough:

    def test_no_locks_returns_equal_copy(self):
        payload = make_payload(days={'2025-03-03': day_record('K1', option1=4)})
        result = merge_locked_payload(payload, make_payload(), set())
        assert result == payload
        assert result is not payload
        assert '_lockInfo' not in result

    def test_no_previous_returns_payload(self):
        payload = make_payload(days={'2025-03-03': day_record('K1', option1=4)})
        result = merge_locked_payload(payload, None, WEEK_10)
        assert result == payload

    def test_inputs_are_not_mutated(self):
        previous = make_payload(days={'2025-03-03': day_record('K1', option1=4)})
        payload = make_payload(days={'2025-03-03': day_record('K1', option1=8)})
        before_prev, before_new = copy.deepcopy(previous), copy.deepcopy(payload)
        result = merge_locked_payload(payload, previous, WEEK_10)
        result['days']['2025-03-03']['entries'][0]['hours']['option1'] = 99
        assert previous == before_prev
        assert payload == before_new


class TestLockedDays:

    def test_locked_day_keeps_previous_value(self):
        previous = make_payload(days={'2025-03-03': day_record('K1', option1=4)})
        payload = make_payload(days={
            '2025-03-03': day_record('K1', option1=8),
            '2025-03-10': day_record('K1', option1=6),
        })
        result = merge_locked_payload(payload, previous, WEEK_10)
        assert result['days']['2025-03-03']['entries'][0]['hours']['option1'] == 4
        assert result['days']['2025-03-10']['entries'][0]['hours']['option1'] == 6
        assert result['_lockInfo']['frozenDays'] == ['2025-03-03']
        assert result['_lockInfo']['lockedDates'] == sorted(WEEK_10)

    def test_new_day_in_locked_week_is_dropped(self):
        previous = make_payload(days={})
        payload = make_payload(days={'2025-03-04': day_record('K1', option1=8)})
        result = merge_locked_payload(payload, previous, WEEK_10)
        assert '2025-03-04' not in result['days']
        assert result['_lockInfo']['frozenDays'] == ['2025-03-04']

    def test_removed_day_in_locked_week_is_restored(self):
        previous = make_payload(days={'2025-03-05': day_record('K2', option1=3)})
        result = merge_locked_payload(make_payload(days={}), previous, WEEK_10)
        assert result['days']['2025-03-05'] == previous['days']['2025-03-05']

    def test_unchanged_locked_day_is_not_reported(self):
        previous = make_payload(days={'2025-03-03': day_record('K1', option1=4)})
        payload = copy.deepcopy(previous)
        result = merge_locked_payload(payload, previous, WEEK_10)
        assert result['_lockInfo']['frozenDays'] == []
        assert result['days'] == previous['days']


class TestLockedPikett:

    def test_pikett_on_locked_date_comes_from_previous(self):
        old_entry = {'date': '2025-03-08', 'komNr': 'K1', 'hours': 2, 'note': '', 'isOvertime3': False}
        new_entry = dict(old_entry, hours=5)
        outside = {'date': '2025-03-15', 'komNr': 'K1', 'hours': 1, 'note': '', 'isOvertime3': False}
        previous = make_payload(pikett=[old_entry])
        payload = make_payload(pikett=[new_entry, outside])
        result = merge_locked_payload(payload, previous, WEEK_10)
        assert result['pikett'] == [old_entry, outside]
        assert result['_lockInfo']['frozenPikett'] == 2

    def test_new_pikett_on_locked_date_without_previous_entry_is_dropped(self):
        entry = {'date': '2025-03-09', 'komNr': 'K1', 'hours': 4, 'note': '', 'isOvertime3': True}
        result = merge_locked_payload(make_payload(pikett=[entry]), make_payload(), WEEK_10)
        assert result['pikett'] == []
        assert result['_lockInfo']['frozenPikett'] == 1


class TestLockedAbsences:

    def test_previous_absence_in_locked_week_wins(self):
        old = _absence('a1', '2025-03-04', '2025-03-05')
        new = _absence('a1', '2025-03-04', '2025-03-12')
        result = merge_locked_payload(make_payload(absences=[new]), make_payload(absences=[old]), WEEK_10)
        assert result['absences'] == [old]
        assert result['_lockInfo']['frozenAbsences'] == ['a1']

    def test_new_absence_touching_locked_week_is_dropped(self):
        new = _absence('a2', '2025-03-07', '2025-03-11', status='pending')
        result = merge_locked_payload(make_payload(absences=[new]), make_payload(), WEEK_10)
        assert result['absences'] == []
        assert result['_lockInfo']['frozenAbsences'] == ['a2']

    def test_absence_outside_locked_dates_passes(self):
        free = _absence('a3', '2025-03-20', '2025-03-21')
        result = merge_locked_payload(make_payload(absences=[free]), make_payload(), WEEK_10)
        assert result['absences'] == [free]
        assert result['_lockInfo']['frozenAbsences'] == []

    def test_absences_deduplicated_by_id(self):
        old = _absence('a1', '2025-03-03', '2025-03-03')
        result = merge_locked_payload(
            make_payload(absences=[copy.deepcopy(old)]), make_payload(absences=[old]), WEEK_10
        )
        assert [a['id'] for a in result['absences']] == ['a1']
        assert result['_lockInfo']['frozenAbsences'] == []
