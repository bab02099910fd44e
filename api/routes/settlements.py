"""Settlement candidate search."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from core.models import SettlementPayment
from reconciliation.settlement import MAX_CANDIDATES, find_candidates


router = APIRouter()


@router.get("/candidates")
async def settlement_candidates(
    request: Request,
    paid_cents: int = Query(..., ge=0, description="Amount actually paid, in cents"),
    interest_cents: int = Query(0, ge=0),
    penalty_cents: int = Query(0, ge=0),
    discount_cents: int = Query(0, ge=0),
    reference: Optional[str] = Query(None, description="Document reference hint"),
    limit: int = Query(MAX_CANDIDATES, ge=1, le=100),
) -> dict:
    """Unpaid installments whose amount is within 15% of the expected base."""
    payment = SettlementPayment(
        amount_cents=paid_cents,
        interest_cents=interest_cents,
        penalty_cents=penalty_cents,
        discount_cents=discount_cents,
        reference_hint=reference,
    )
    return find_candidates(request.app.state.store, payment, limit=limit).to_dict()
