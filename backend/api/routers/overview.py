"""Overview router: month/week status and yearly balances for one worker."""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from rapportlib.ledger import SubmissionLedger
from ..dependencies import get_ledger, require_auth, to_identity

router = APIRouter()


@router.get(
    "/api/overview",
    tags=["Overview"],
    summary="Month overview by calendar week",
    description=(
        "Status per day (ferien > absence > ok > missing) and per ISO week for the "
        "latest transmission of the month, including week lock state."
    ),
)
def month_overview(
    year: int = Query(..., ge=2000, le=2100),
    monthIndex: int = Query(..., ge=0, le=11),
    worker: Optional[str] = Query(None, description="Admin only: another worker of the team"),
    _cur_user: dict = Depends(require_auth),
    ledger: SubmissionLedger = Depends(get_ledger),
):
    return ledger.overview(to_identity(_cur_user), worker, year, monthIndex)


@router.get("/api/year-balance", tags=["Overview"], summary="Overtime, Vorarbeit and vacation balance")
def year_balance(
    year: int = Query(..., ge=2000, le=2100),
    worker: Optional[str] = Query(None),
    _cur_user: dict = Depends(require_auth),
    ledger: SubmissionLedger = Depends(get_ledger),
):
    return ledger.year_balance(to_identity(_cur_user), worker, year)
