"""
Shared dependencies for the Rapport API.
Logging, rate limiter, token sessions and the request-scoped ledger.
"""
import os
import logging
import logging.handlers
import traceback

from fastapi import HTTPException, Header, Depends, Request
from typing import Optional
from slowapi import Limiter
from slowapi.util import get_remote_address

from rapportlib.errors import StoreCorrupt
from rapportlib.ledger import SubmissionLedger
from rapportlib.models import Identity
from rapportlib.storage import read_json

# ── Structured JSON Logging setup ───────────────────────────────
import json as _json
from datetime import datetime as _dt, timezone as _tz

class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""
    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _dt.fromtimestamp(record.created, tz=_tz.utc).strftime('%Y-%m-%dT%H:%M:%S.') + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return _json.dumps(entry, ensure_ascii=False)

_log_file = os.environ.get('RAPPORT_LOG_FILE', '/tmp/rapport-api.log')
_handler = logging.handlers.RotatingFileHandler(
    _log_file, maxBytes=10 * 1024 * 1024, backupCount=3
)
_handler.setFormatter(_JsonFormatter())

_log_level_str = os.environ.get('RAPPORT_LOG_LEVEL', 'INFO').upper()
_log_level = getattr(logging, _log_level_str, logging.INFO)
_stderr_handler = logging.StreamHandler()
_stderr_handler.setFormatter(_JsonFormatter())

_logger = logging.getLogger('rapportapi')
_logger.setLevel(_log_level)
_logger.addHandler(_handler)
_logger.addHandler(_stderr_handler)

# rapportlib logs through the same handlers
_lib_logger = logging.getLogger('rapportlib')
_lib_logger.setLevel(_log_level)
_lib_logger.addHandler(_handler)
_lib_logger.addHandler(_stderr_handler)

RAPPORT_LOG_FILE = _log_file

# ── Rate Limiter ─────────────────────────────────────────────────
limiter = Limiter(key_func=get_remote_address, default_limits=["200/minute"])

# ── Session store ────────────────────────────────────────────────
# token -> {workerId, teamId, admin, name}; filled from the tokens file at startup.
# NOTE: In-process dict, not safe for multi-worker deployments.
_sessions: dict[str, dict] = {}

# Dev-mode token
_DEV_MODE_ACTIVE = os.environ.get('RAPPORT_DEV_MODE', '').lower() in ('1', 'true', 'yes')
_DEV_TOKEN = "__dev_mode__"
_DEV_USER = {"workerId": "dev", "teamId": "dev", "admin": True, "name": "Developer"}


def load_tokens(path: str) -> int:
    """Replace the session store with the token map written by the auth setup.

    Returns the number of tokens loaded. A missing file means no tokens.
    """
    raw = read_json(path, dict, StoreCorrupt) if path else {}
    if not isinstance(raw, dict):
        raise StoreCorrupt("Token-Datei muss ein Objekt sein", path=path)
    loaded = {}
    for token, user in raw.items():
        if not isinstance(user, dict) or not user.get('workerId') or not user.get('teamId'):
            _logger.warning("Skipping malformed token entry in %s", path)
            continue
        loaded[token] = user
    _sessions.clear()
    _sessions.update(loaded)
    if _DEV_MODE_ACTIVE:
        _sessions[_DEV_TOKEN] = dict(_DEV_USER)
    return len(loaded)


def session_roster() -> dict:
    """worker -> team for every non-admin token; admins are not team members."""
    return {u['workerId']: u['teamId'] for u in _sessions.values() if not u.get('admin')}


def _is_token_valid(token: str) -> bool:
    """Return True if the token is known. The dev token only counts in dev mode."""
    if token == _DEV_TOKEN and not _DEV_MODE_ACTIVE:
        return False
    return token in _sessions


def _token_from_request(request: Request, x_auth_token: Optional[str]) -> Optional[str]:
    if x_auth_token:
        return x_auth_token
    auth = request.headers.get('authorization', '')
    if auth.lower().startswith('bearer '):
        return auth[7:].strip() or None
    return None


def get_current_user(
    request: Request,
    x_auth_token: Optional[str] = Header(None),
) -> Optional[dict]:
    """Return user dict for the X-Auth-Token header (or a Bearer token), or None."""
    token = _token_from_request(request, x_auth_token)
    if token and _is_token_valid(token):
        return _sessions[token]
    return None


def require_auth(user: Optional[dict] = Depends(get_current_user)) -> dict:
    """Dependency: requires any authenticated user."""
    if user is None:
        raise HTTPException(status_code=401, detail="Nicht angemeldet")
    return user


def require_admin(user: Optional[dict] = Depends(get_current_user)) -> dict:
    """Dependency: requires an administrator."""
    if user is None:
        raise HTTPException(status_code=401, detail="Nicht angemeldet")
    if not user.get('admin'):
        raise HTTPException(status_code=403, detail="Keine Admin-Berechtigung")
    return user


def to_identity(user: dict) -> Identity:
    """Session user dict -> Identity passed to the ledger."""
    try:
        return Identity(
            worker_id=user.get('workerId', ''),
            team_id=user.get('teamId', ''),
            is_admin=bool(user.get('admin')),
            name=user.get('name', ''),
        )
    except ValueError as exc:
        _logger.warning("Rejected session with invalid identity: %s", exc)
        raise HTTPException(status_code=401, detail="Ungültige Sitzung") from exc


def get_ledger(request: Request) -> SubmissionLedger:
    """The ledger opened by the application lifespan."""
    ledger = getattr(request.app.state, 'ledger', None)
    if ledger is None:
        raise HTTPException(status_code=503, detail="Datenablage nicht bereit")
    return ledger


def _sanitize_500(e: Exception, context: str = '') -> HTTPException:
    """Log full exception, return sanitized 500."""
    _logger.error(
        "500 error context=%s type=%s msg=%s trace=%s",
        context, type(e).__name__, str(e),
        traceback.format_exc().splitlines()[-1],
    )
    return HTTPException(
        status_code=500,
        detail="Interner Serverfehler. Bitte versuche es erneut.",
    )
