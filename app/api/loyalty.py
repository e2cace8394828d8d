"""
REST API endpoints for loyalty balances, tiers and promotions.
"""
from __future__ import annotations

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.schemas.loyalty import (
    AwardPointsRequest,
    LightningDealRead,
    LoyaltyBalanceRead,
    LoyaltyRewardRead,
    TierRead,
)
from app.services.loyalty_service import LoyaltyService
from app.websocket.channels import ChannelBroker, get_broker

router = APIRouter(prefix="/api", tags=["loyalty"])


@router.get("/users/{user_id}/loyalty", response_model=LoyaltyBalanceRead)
async def get_loyalty_balance(
    user_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> LoyaltyBalanceRead:
    return await LoyaltyService(session).get_balance(user_id)


@router.post("/users/{user_id}/loyalty/award", response_model=LoyaltyBalanceRead)
async def award_loyalty_points(
    user_id: UUID,
    data: AwardPointsRequest,
    session: AsyncSession = Depends(get_session),
    broker: ChannelBroker = Depends(get_broker),
) -> LoyaltyBalanceRead:
    """Award points directly or for an order total (one point per whole unit)."""
    return await LoyaltyService(session, broker).award_points(
        user_id, points=data.points, order_total=data.order_total
    )


@router.get("/loyalty/tiers", response_model=List[TierRead])
async def list_tiers() -> List[TierRead]:
    return LoyaltyService.list_tiers()


@router.get("/restaurants/{restaurant_id}/rewards", response_model=List[LoyaltyRewardRead])
async def list_rewards(
    restaurant_id: UUID,
    include_inactive: bool = Query(False),
    session: AsyncSession = Depends(get_session),
) -> List[LoyaltyRewardRead]:
    rewards = await LoyaltyService(session).list_rewards(
        restaurant_id, include_inactive=include_inactive
    )
    return [LoyaltyRewardRead.model_validate(r) for r in rewards]


@router.get(
    "/restaurants/{restaurant_id}/lightning-deals",
    response_model=List[LightningDealRead],
)
async def list_lightning_deals(
    restaurant_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> List[LightningDealRead]:
    """Deals currently inside their claim window."""
    deals = await LoyaltyService(session).list_active_deals(restaurant_id)
    return [LightningDealRead.model_validate(d) for d in deals]
