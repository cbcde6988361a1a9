from __future__ import annotations
from fastapi import APIRouter, Depends, Query

from ..deps import get_claims, get_core, require_staff
from ..models import RedemptionStatus, RewardCategory, RewardType
from ..schemas import RedemptionPage, RedemptionRead, RedemptionStatusUpdate, RewardCreate, RewardRead
from ..services.step_credit import StepCreditCore

router = APIRouter(prefix="/rewards", tags=["rewards"])

@router.get("", response_model=list[RewardRead])
async def list_rewards(
    category: RewardCategory | None = None,
    type: RewardType | None = None,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    claims: dict = Depends(get_claims),
    core: StepCreditCore = Depends(get_core),
):
    return await core.list_rewards(category=category, type=type, limit=limit, offset=offset)

@router.post("", response_model=RewardRead, status_code=201)
async def create_reward(payload: RewardCreate, claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core)):
    require_staff(claims)
    return await core.create_reward(payload)

@router.get("/users/me/redemptions", response_model=RedemptionPage)
async def my_redemptions(
    status: RedemptionStatus | None = None,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    claims: dict = Depends(get_claims),
    core: StepCreditCore = Depends(get_core),
):
    items, total = await core.list_redemptions(claims["sub"], status=status, limit=limit, offset=offset)
    return RedemptionPage(items=items, total=total, limit=limit, offset=offset)

@router.post("/redemptions/{redemption_id}/status", response_model=RedemptionRead)
async def update_redemption_status(
    redemption_id: str, payload: RedemptionStatusUpdate,
    claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core),
):
    require_staff(claims)
    return await core.transition_redemption(redemption_id, payload.status)

@router.get("/{reward_id}", response_model=RewardRead)
async def get_reward(reward_id: str, claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core)):
    return await core.get_reward(reward_id)

@router.post("/{reward_id}/redeem", response_model=RedemptionRead, status_code=201)
async def redeem_reward(reward_id: str, claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core)):
    return await core.redeem(claims["sub"], reward_id)
