"""Admin router: team overview, week locks, cost objects."""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from rapportlib.ledger import SubmissionLedger
from ..dependencies import get_ledger, require_admin, to_identity, _logger, limiter
from ..types import CostObjectRow, LockMeta

router = APIRouter()


# ── Team overview ─────────────────────────────────────────────

@router.get("/api/admin/overview", tags=["Admin"], summary="Month status of the whole team")
def team_overview(
    year: int = Query(..., ge=2000, le=2100),
    monthIndex: int = Query(..., ge=0, le=11),
    _cur_user: dict = Depends(require_admin),
    ledger: SubmissionLedger = Depends(get_ledger),
):
    return ledger.team_overview(to_identity(_cur_user), year, monthIndex)


# ── Week locks ────────────────────────────────────────────────

@router.get("/api/admin/week-locks", tags=["Admin"], summary="Locked weeks of a worker")
def get_week_locks(
    worker: str = Query(..., min_length=1, max_length=64),
    _cur_user: dict = Depends(require_admin),
    ledger: SubmissionLedger = Depends(get_ledger),
) -> dict[str, LockMeta]:
    return ledger.week_locks_for(to_identity(_cur_user), worker)


class WeekLockUpdate(BaseModel):
    workerId: str = Field(..., min_length=1, max_length=64)
    weekYear: int = Field(..., ge=2000, le=2100)
    week: int = Field(..., ge=1, le=53)
    locked: bool


@router.put("/api/admin/week-locks", tags=["Admin"], summary="Lock or unlock a calendar week")
def set_week_lock(
    body: WeekLockUpdate,
    _cur_user: dict = Depends(require_admin),
    ledger: SubmissionLedger = Depends(get_ledger),
):
    identity = to_identity(_cur_user)
    meta = ledger.set_week_lock(identity, body.workerId, body.weekYear, body.week, body.locked)
    _logger.warning(
        "AUDIT LOCK_SET | admin=%s worker=%s week=%s locked=%s",
        identity.worker_id, body.workerId, meta['weekKey'], body.locked,
    )
    return {"ok": True, **meta}


# ── Cost objects ──────────────────────────────────────────────

@router.get("/api/admin/cost-objects", tags=["Admin"], summary="Team hours per cost object")
def list_cost_objects(
    status: str = Query('active', pattern='^(active|archived|all)$'),
    search: Optional[str] = Query(None, max_length=64),
    _cur_user: dict = Depends(require_admin),
    ledger: SubmissionLedger = Depends(get_ledger),
):
    return ledger.cost_object_summary(to_identity(_cur_user), status, search or '')


@router.post("/api/admin/cost-objects/rebuild", tags=["Admin"], summary="Rebuild cost-object totals")
@limiter.limit("5/minute")
def rebuild_cost_objects(
    request: Request,
    _cur_user: dict = Depends(require_admin),
    ledger: SubmissionLedger = Depends(get_ledger),
):
    identity = to_identity(_cur_user)
    summary = ledger.rebuild(identity)
    _logger.warning(
        "AUDIT INDEX_REBUILD | admin=%s teams=%d cost_objects=%d",
        identity.worker_id, summary['teams'], summary['costObjects'],
    )
    return {"ok": True, **summary}


@router.get("/api/admin/cost-objects/{kom_nr}", tags=["Admin"], summary="One cost object in detail")
def get_cost_object(
    kom_nr: str,
    _cur_user: dict = Depends(require_admin),
    ledger: SubmissionLedger = Depends(get_ledger),
) -> CostObjectRow:
    return ledger.cost_object_detail(to_identity(_cur_user), kom_nr)


class ArchiveUpdate(BaseModel):
    archived: bool


@router.put("/api/admin/cost-objects/{kom_nr}/archive", tags=["Admin"], summary="Archive or restore a cost object")
def archive_cost_object(
    kom_nr: str,
    body: ArchiveUpdate,
    _cur_user: dict = Depends(require_admin),
    ledger: SubmissionLedger = Depends(get_ledger),
):
    identity = to_identity(_cur_user)
    meta = ledger.set_archived(identity, kom_nr, body.archived)
    _logger.warning(
        "AUDIT ARCHIVE_SET | admin=%s team=%s kom=%s archived=%s",
        identity.worker_id, identity.team_id, meta['komNr'], body.archived,
    )
    return {"ok": True, **meta}
