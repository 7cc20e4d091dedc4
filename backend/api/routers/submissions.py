"""Submissions router: month transmission and submission history."""
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query

from rapportlib.ledger import SubmissionLedger
from ..dependencies import get_ledger, require_auth, to_identity, _logger
from ..types import IndexEntryList, SubmissionDoc

router = APIRouter()


@router.post(
    "/api/transmit-month",
    tags=["Submissions"],
    summary="Transmit a month",
    description=(
        "Stores the month as a new immutable snapshot. Days in locked weeks keep "
        "the previously transmitted values; `lockInfo` lists what was frozen."
    ),
)
def transmit_month(
    body: dict[str, Any] = Body(...),
    _cur_user: dict = Depends(require_auth),
    ledger: SubmissionLedger = Depends(get_ledger),
):
    identity = to_identity(_cur_user)
    result = ledger.transmit(identity, body)
    lock_info = result['lockInfo']
    if lock_info and lock_info.get('frozenDays'):
        _logger.info(
            "Transmission %s by %s kept %d locked day(s)",
            result['submissionId'], identity.worker_id, len(lock_info['frozenDays']),
        )
    return {
        "ok": True,
        "submissionId": result['submissionId'],
        "sentAt": result['sentAt'],
        "message": f"{body.get('monthLabel', 'Monat')} wurde übermittelt",
        "totals": result['totals'],
        "lockInfo": lock_info,
    }


@router.get("/api/submissions", tags=["Submissions"], summary="List transmitted versions")
def list_submissions(
    worker: Optional[str] = Query(None, description="Admin only: another worker of the team"),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    monthIndex: Optional[int] = Query(None, ge=0, le=11),
    _cur_user: dict = Depends(require_auth),
    ledger: SubmissionLedger = Depends(get_ledger),
) -> IndexEntryList:
    return ledger.list_submissions(to_identity(_cur_user), worker, year, monthIndex)


@router.get("/api/submissions/{submission_id}", tags=["Submissions"], summary="Load one transmitted version")
def get_submission(
    submission_id: str,
    worker: Optional[str] = Query(None),
    _cur_user: dict = Depends(require_auth),
    ledger: SubmissionLedger = Depends(get_ledger),
) -> SubmissionDoc:
    return ledger.load_submission(to_identity(_cur_user), submission_id, worker)
