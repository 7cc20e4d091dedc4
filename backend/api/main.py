"""FastAPI application for the Rapport submission ledger."""
import os
import sys
import time as _startup_time_module
from contextlib import asynccontextmanager
from dotenv import load_dotenv

_APP_START_TIME = _startup_time_module.time()

# Load .env file if present
load_dotenv(os.path.join(os.path.dirname(__file__), '..', '.env'))

# Add parent dir to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from slowapi import _rate_limit_exceeded_handler  # noqa: E402
from slowapi.errors import RateLimitExceeded  # noqa: E402

from rapportlib.errors import RapportError  # noqa: E402
from rapportlib.ledger import SubmissionLedger  # noqa: E402

# ── Import shared dependencies ──────────────────────────────────
# These are re-exported here so tests can do `from api.main import _sessions`
from .dependencies import (  # noqa: E402
    _sessions,
    _DEV_MODE_ACTIVE,
    _logger,
    _sanitize_500,
    _token_from_request,
    get_current_user,
    limiter,
    load_tokens,
    require_admin,
    require_auth,
    session_roster,
)

# ── Config ──────────────────────────────────────────────────────
DATA_DIR = os.path.normpath(os.environ.get(
    'RAPPORT_DATA_DIR',
    os.path.join(os.path.dirname(__file__), '..', 'data')
))
TOKENS_FILE = os.environ.get('RAPPORT_TOKENS_FILE', '')

# CORS origins from env
_raw_origins = os.environ.get('ALLOWED_ORIGINS', '')
ALLOWED_ORIGINS = (
    [o.strip() for o in _raw_origins.split(',') if o.strip()]
    or ['http://localhost:5173', 'http://localhost:8000']
)

_OPENAPI_TAGS = [
    {"name": "Health", "description": "System health and version info"},
    {"name": "Submissions", "description": "Monthly rapport transmission and history"},
    {"name": "Overview", "description": "Month/week status and yearly balances"},
    {"name": "Admin", "description": "Week locks, team overview and cost objects (Admin only)"},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    ledger = SubmissionLedger(DATA_DIR).open()
    app.state.ledger = ledger
    count = load_tokens(TOKENS_FILE or os.path.join(DATA_DIR, 'tokens.json'))
    ledger.set_roster(session_roster())
    _logger.info("Rapport API started: data=%s tokens=%d", DATA_DIR, count)
    if _DEV_MODE_ACTIVE:
        _logger.warning("DEV MODE ACTIVE: dev token enabled (RAPPORT_DEV_MODE=true). Do not use in production!")
    yield
    ledger.close()
    app.state.ledger = None
    _logger.info("Rapport API shutting down, stores closed")


_API_VERSION = "1.0.0"

app = FastAPI(
    lifespan=lifespan,
    title="Rapport API",
    description=(
        "Monthly time-sheet (Rapport) ledger for field workers.\n\n"
        "## Authentication\n"
        "Endpoints require an `x-auth-token` header (or `Authorization: Bearer`).\n\n"
        "## Roles\n"
        "- **Mitarbeiter** – transmit and read own months\n"
        "- **Admin** – team overview, week locks and cost objects\n"
    ),
    version=_API_VERSION,
    openapi_tags=_OPENAPI_TAGS,
)

app.state.limiter = limiter
app.state.ledger = None
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "x-auth-token", "Authorization"],
)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
    response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
    response.headers["Cross-Origin-Resource-Policy"] = "same-origin"
    # Only send HSTS if running in production (check env)
    if os.environ.get('RAPPORT_HSTS', '').lower() in ('1', 'true', 'yes'):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


@app.exception_handler(RapportError)
async def rapport_error_handler(request: Request, exc: RapportError):
    """Map ledger errors to their status code and a stable error body."""
    if exc.status_code >= 500:
        _logger.error(
            "Ledger error: %s %s | %s | %s",
            request.method, request.url.path, exc.code, exc.message,
        )
    else:
        _logger.info("Request rejected: %s %s | %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Translate Pydantic validation errors into German user-friendly messages."""
    _TYPE_MSGS = {
        "missing": "Pflichtfeld fehlt",
        "int_parsing": "Muss eine ganze Zahl sein",
        "float_parsing": "Muss eine Zahl sein",
        "bool_parsing": "Muss true oder false sein",
        "string_too_short": "Eingabe zu kurz",
        "string_too_long": "Eingabe zu lang",
        "greater_than_equal": "Wert zu klein",
        "less_than_equal": "Wert zu gross",
        "dict_type": "JSON-Objekt erwartet",
        "value_error": "Ungültiger Wert",
        "type_error": "Falscher Datentyp",
    }
    errors = []
    for e in exc.errors():
        field = ".".join(str(loc) for loc in e.get("loc", []) if loc not in ("body", "query", "path"))
        etype = e.get("type", "")
        msg = _TYPE_MSGS.get(etype, e.get("msg", "Ungültiger Wert"))
        if field:
            errors.append(f"{field}: {msg}")
        else:
            errors.append(msg)
    detail = "; ".join(errors) if errors else "Ungültige Eingabe"
    return JSONResponse(status_code=422, content={"ok": False, "error": "validation_error", "detail": detail})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch unhandled exceptions, log with details, return sanitized 500."""
    sanitized = _sanitize_500(exc, context=f"{request.method} {request.url.path}")
    return JSONResponse(
        status_code=sanitized.status_code,
        content={"ok": False, "error": "internal_error", "detail": sanitized.detail},
    )


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """Log every request as structured JSON with timing info and request-ID."""
    import time as _t
    import uuid as _uuid
    import json as _json_mod
    # Generate a short unique request ID for correlating log entries
    req_id = _uuid.uuid4().hex[:8]
    start = _t.time()
    response = await call_next(request)
    duration_ms = round((_t.time() - start) * 1000)
    token = _token_from_request(request, request.headers.get('x-auth-token'))
    user = _sessions.get(token, {}).get('workerId', '-') if token else '-'
    entry = {
        "req_id": req_id,
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "duration_ms": duration_ms,
        "user": user,
    }
    _logger.info(_json_mod.dumps(entry, ensure_ascii=False))
    if response.status_code == 403:
        _logger.warning("AUTH 403 | method=%s path=%s user=%s", request.method, request.url.path, user)
    response.headers["X-Request-ID"] = req_id
    return response


# ── Include routers ─────────────────────────────────────────────
from .routers import submissions, overview, admin  # noqa: E402

app.include_router(submissions.router)
app.include_router(overview.router)
app.include_router(admin.router)


# ── Routes ──────────────────────────────────────────────────────

@app.get(
    "/api/health",
    tags=["Health"],
    summary="Health check",
    description=(
        "Returns service status, API version, uptime in seconds and whether the "
        "data stores are readable. This endpoint is public (no authentication required)."
    ),
)
def health(request: Request):
    """Health check endpoint. Public, no auth required."""
    import time as _t
    storage_status = "ok"
    ledger = request.app.state.ledger
    if ledger is None:
        storage_status = "closed"
    else:
        try:
            ledger.aggregation.load()
            ledger.week_locks.all_locks()
        except RapportError as exc:
            _logger.warning("Health check: store unreadable: %s", exc.message)
            storage_status = "error"

    return {
        "status": "ok",
        "version": _API_VERSION,
        "uptime_seconds": round(_t.time() - _APP_START_TIME, 1),
        "storage": {"status": storage_status},
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)
