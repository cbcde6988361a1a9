from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException, Query

from ..core.redis import allow_request
from ..deps import get_claims, get_core, require_staff
from ..models import EntryKind
from ..schemas import (
    AccountRead, AdjustRequest, LedgerPage, SpendRequest, StepConversionRead, StepIngest, StepSubmission,
)
from ..services.step_credit import StepCreditCore

router = APIRouter(prefix="/credits", tags=["credits"])

@router.post("/steps", response_model=StepConversionRead)
async def submit_steps(payload: StepSubmission, claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core)):
    user_id = claims["sub"]
    if not await allow_request(user_id, "credits.steps"):
        raise HTTPException(status_code=429, detail="Too many requests")
    return await core.convert_steps(user_id, payload.steps, day=payload.day, entry_id=payload.entry_id)

# server-to-server ingest (device sync, batch import); service or admin token
@router.post("/ingest/steps", response_model=StepConversionRead)
async def ingest_steps(payload: StepIngest, claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core)):
    require_staff(claims)
    return await core.convert_steps(payload.user_id, payload.steps, day=payload.day, entry_id=payload.entry_id)

@router.get("/users/me/balance", response_model=AccountRead)
async def my_balance(claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core)):
    return await core.get_balance(claims["sub"])

@router.get("/users/me/transactions", response_model=LedgerPage)
async def my_transactions(
    kind: EntryKind | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    claims: dict = Depends(get_claims),
    core: StepCreditCore = Depends(get_core),
):
    items, total = await core.list_transactions(claims["sub"], kind=kind, limit=limit, offset=offset)
    return LedgerPage(items=items, total=total, limit=limit, offset=offset)

@router.post("/users/me/spend", response_model=AccountRead)
async def spend_credits(payload: SpendRequest, claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core)):
    return await core.spend(
        claims["sub"], payload.amount, description=payload.description,
        reward_id=payload.reward_id, entry_id=payload.entry_id,
    )

@router.post("/users/{user_id}/adjust", response_model=AccountRead)
async def adjust_credits(user_id: str, payload: AdjustRequest, claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core)):
    require_staff(claims)
    return await core.adjust(user_id, payload.delta, payload.reason, entry_id=payload.entry_id)
