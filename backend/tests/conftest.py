"""
Shared test fixtures for the Rapport backend tests.
"""
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# ── Python path setup ──────────────────────────────────────────────────────────
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)


# ── Mock user factories ────────────────────────────────────────────────────────

def _mock_admin():
    return {'workerId': 'admin', 'teamId': 'team-a', 'admin': True, 'name': 'Admin'}

def _mock_worker():
    return {'workerId': 'hans', 'teamId': 'team-a', 'admin': False, 'name': 'Hans'}

def _mock_other_worker():
    return {'workerId': 'urs', 'teamId': 'team-a', 'admin': False, 'name': 'Urs'}


# worker -> team, as the tokens file would provide it
ROSTER = {'hans': 'team-a', 'urs': 'team-a'}


# ── Payload builders ───────────────────────────────────────────────────────────

def day_record(kom='', option1=0.0, regie=0.0, ferien=False, schulung=0.0, **ops):
    """One DayRecord in wire format. Extra keyword args are further operation codes."""
    hours = {'option1': option1} if option1 else {}
    hours.update({k: v for k, v in ops.items() if v})
    record = {
        'entries': [{'komNr': kom, 'hours': hours}] if hours else [],
        'specialEntries': [{'type': 'regie', 'komNr': kom, 'hours': regie}] if regie else [],
        'dayHours': {'schulung': schulung, 'sitzungKurs': 0, 'arztKrank': 0},
        'flags': {'ferien': ferien, 'schmutzzulage': False, 'nebenauslagen': False},
    }
    return record


def make_payload(year=2025, month_index=2, days=None, pikett=None, absences=None, label=None):
    return {
        'year': year,
        'monthIndex': month_index,
        'monthLabel': label or f"{month_index + 1:02d}/{year}",
        'days': days or {},
        'pikett': pikett or [],
        'absences': absences or [],
    }


class TickingClock:
    """Deterministic clock: every call returns one second later than the last."""

    def __init__(self, start=datetime(2025, 4, 1, 8, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        self.now = self.now + timedelta(seconds=1)
        return self.now


# ── Identities ─────────────────────────────────────────────────────────────────

@pytest.fixture
def worker():
    from rapportlib.models import Identity
    return Identity(worker_id='hans', team_id='team-a', name='Hans')


@pytest.fixture
def other_worker():
    from rapportlib.models import Identity
    return Identity(worker_id='urs', team_id='team-a', name='Urs')


@pytest.fixture
def admin():
    from rapportlib.models import Identity
    return Identity(worker_id='admin', team_id='team-a', is_admin=True, name='Admin')


# ── Ledger ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return str(path)


@pytest.fixture
def ledger(data_dir):
    """Function-scoped ledger on a fresh data directory."""
    from rapportlib.ledger import SubmissionLedger
    led = SubmissionLedger(data_dir, clock=TickingClock(), roster=ROSTER).open()
    yield led
    led.close()


# ── API ────────────────────────────────────────────────────────────────────────

def _patch_auth(app, user_fn, admin=False):
    """Override auth dependencies to return user_fn(). Returns previous overrides."""
    from api.main import require_auth, require_admin, get_current_user
    prev = dict(app.dependency_overrides)
    app.dependency_overrides[get_current_user] = user_fn
    app.dependency_overrides[require_auth] = user_fn
    if admin:
        app.dependency_overrides[require_admin] = user_fn
    return prev


def _restore_auth(app, prev):
    """Restore dependency overrides to prev state."""
    app.dependency_overrides.clear()
    app.dependency_overrides.update(prev)


@pytest.fixture
def app(data_dir, monkeypatch):
    """The FastAPI app pointed at a fresh data directory."""
    import api.main as main_module
    from api.dependencies import limiter
    monkeypatch.setattr(main_module, 'DATA_DIR', data_dir)
    monkeypatch.setattr(main_module, 'TOKENS_FILE', os.path.join(data_dir, 'tokens.json'))
    limiter.reset()
    return main_module.app


@pytest.fixture
def admin_client(app):
    """TestClient with admin auth bypass."""
    from starlette.testclient import TestClient
    prev = _patch_auth(app, _mock_admin, admin=True)
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    _restore_auth(app, prev)


@pytest.fixture
def worker_client(app):
    """TestClient as a plain worker. require_admin still answers 403."""
    from starlette.testclient import TestClient
    prev = _patch_auth(app, _mock_worker)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    _restore_auth(app, prev)
