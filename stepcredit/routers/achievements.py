from __future__ import annotations
from fastapi import APIRouter, Depends

from ..deps import get_claims, get_core
from ..schemas import AchievementDefinitionRead, AchievementStatusRead
from ..services.step_credit import StepCreditCore

router = APIRouter(prefix="/achievements", tags=["achievements"])

@router.get("", response_model=list[AchievementDefinitionRead])
async def list_definitions(claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core)):
    return await core.list_definitions()

@router.get("/users/me", response_model=list[AchievementStatusRead])
async def my_achievements(claims: dict = Depends(get_claims), core: StepCreditCore = Depends(get_core)):
    return await core.list_achievements(claims["sub"])
