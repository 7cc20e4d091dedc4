"""Tests for month totals and the yearly overtime / vacation balance."""
import json

import pytest

from rapportlib.balances import (
    YearConfig,
    absence_days_in_year,
    compute_totals,
    compute_year_balance,
    load_year_config,
    used_vacation_days,
    vacation_fraction,
)
from rapportlib.errors import StoreCorrupt

from conftest import day_record, make_payload


def _sub(days=None, pikett=None, absences=None, sent_at='2025-04-01T08:00:00.000Z', month_index=2, year=2025):
    doc = make_payload(year=year, month_index=month_index, days=days, pikett=pikett, absences=absences)
    doc['sentAt'] = sent_at
    return doc


class TestComputeTotals:

    def test_all_buckets(self):
        days = {
            '2025-03-03': day_record('K1', option1=6, regie=1, schulung=1),
        }
        days['2025-03-03']['specialEntries'].append({'type': 'fehler', 'komNr': 'K1', 'hours': 0.5})
        pikett = [
            {'date': '2025-03-08', 'komNr': 'K1', 'hours': 2, 'note': '', 'isOvertime3': False},
            {'date': '2025-03-09', 'komNr': 'K1', 'hours': 1.5, 'note': '', 'isOvertime3': True},
        ]
        totals = compute_totals(make_payload(days=days, pikett=pikett))
        assert totals == {
            'komHours': 7.5,
            'regieHours': 1,
            'fehlerHours': 0.5,
            'dayHours': 1,
            'pikettHours': 2,
            'overtime3Hours': 1.5,
            'totalHours': 12,
        }

    def test_empty_payload(self):
        assert compute_totals(make_payload())['totalHours'] == 0


class TestVacation:

    def test_fraction_rule(self):
        assert vacation_fraction(0) == 1.0
        assert vacation_fraction(4) == 0.5
        assert vacation_fraction(8) == 0.0
        assert vacation_fraction(9) == 0.0

    def test_used_days_skip_weekends_and_holidays(self):
        days = {
            '2025-04-17': day_record(ferien=True),               # Thursday
            '2025-04-18': day_record(ferien=True),               # Karfreitag
            '2025-04-19': day_record(ferien=True),               # Saturday
            '2025-04-22': day_record('K1', option1=4, ferien=True),
        }
        assert used_vacation_days(days, 2025) == 1.5

    def test_absence_days_explicit_within_year(self):
        absence = {'id': 'a', 'from': '2025-03-10', 'to': '2025-03-14', 'days': 4.5}
        assert absence_days_in_year(absence, 2025) == 4.5

    def test_absence_days_across_year_boundary_counts_weekdays(self):
        absence = {'id': 'a', 'from': '2025-12-29', 'to': '2026-01-02', 'days': 5}
        assert absence_days_in_year(absence, 2025) == 3
        assert absence_days_in_year(absence, 2026) == 2
        assert absence_days_in_year(absence, 2024) == 0


class TestYearBalance:

    def test_overtime_and_vorarbeit(self):
        days = {
            '2025-03-03': day_record('K1', option1=10),   # +2
            '2025-03-04': day_record('K1', option1=7),    # -1
            '2025-03-05': day_record(ferien=True),        # vacation, no minus hours
        }
        configs = {2025: YearConfig(vorarbeitRequired=1, vacationDaysPerYear=20)}
        result = compute_year_balance([_sub(days)], 2025, configs)
        assert result['perYear'] == {'2025': {'net': 1.0, 'positive': 2.0}}
        assert result['vorarbeit'] == {'filled': 1.0, 'required': 1.0}
        assert result['ueZ1'] == 0.0
        assert result['vacation'] == {'usedDays': 1.0, 'entitlementDays': 20, 'remainingDays': 19.0}

    def test_pikett_balances(self):
        pikett = [
            {'date': '2025-03-08', 'komNr': 'K1', 'hours': 2, 'note': '', 'isOvertime3': False},
            {'date': '2025-03-09', 'komNr': 'K1', 'hours': 3, 'note': '', 'isOvertime3': True},
        ]
        result = compute_year_balance([_sub(pikett=pikett)], 2025, {2025: YearConfig()})
        assert result['ueZ2'] == 2
        assert result['ueZ3'] == 3

    def test_later_month_version_wins_per_day(self):
        older = _sub({'2025-03-03': day_record('K1', option1=12)}, sent_at='2025-04-01T08:00:00.000Z')
        newer = _sub({'2025-03-03': day_record('K1', option1=9)}, sent_at='2025-04-02T08:00:00.000Z')
        result = compute_year_balance([newer, older], 2025, {2025: YearConfig()})
        assert result['perYear']['2025']['net'] == 1.0

    def test_absence_rows(self):
        absences = [{'id': 'a1', 'type': 'ferien', 'from': '2025-03-10', 'to': '2025-03-11',
                     'comment': '', 'status': 'accepted'}]
        result = compute_year_balance([_sub(absences=absences)], 2025)
        assert result['absences'] == [{
            'id': 'a1', 'type': 'ferien', 'from': '2025-03-10', 'to': '2025-03-11',
            'status': 'accepted', 'daysInYear': 2,
        }]

    def test_default_config_for_2025(self):
        result = compute_year_balance([], 2025)
        assert result['vorarbeit']['required'] == 39
        assert result['vacation']['entitlementDays'] == 21


class TestYearConfigFile:

    def test_missing_file_gives_defaults(self, tmp_path):
        configs = load_year_config(str(tmp_path / "year_config.json"))
        assert configs[2026].vorarbeitRequired == 39

    def test_override_per_year(self, tmp_path):
        path = tmp_path / "year_config.json"
        path.write_text(json.dumps({"2027": {"vorarbeitRequired": 20, "vacationDaysPerYear": 25}}), encoding='utf-8')
        configs = load_year_config(str(path))
        assert configs[2027].vacationDaysPerYear == 25
        assert configs[2025].vorarbeitRequired == 39

    def test_invalid_entry_raises(self, tmp_path):
        path = tmp_path / "year_config.json"
        path.write_text(json.dumps({"2027": {"vorarbeitRequired": -5}}), encoding='utf-8')
        with pytest.raises(StoreCorrupt):
            load_year_config(str(path))
