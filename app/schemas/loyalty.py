from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.schemas.base import ApiRequest


class LoyaltyTier(str, Enum):
    REGULAR = "regular"
    VIP = "vip"
    PREMIUM = "premium"


class TierBenefitRead(BaseModel):
    id: str
    title: str
    description: str
    kind: str  # discount, freeItem, priority, special
    value: Optional[float] = None
    category: Optional[str] = None
    validity_days: int
    usage_limit: int


class TierRead(BaseModel):
    id: LoyaltyTier
    name: str
    min_points: int
    description: str
    benefits: List[TierBenefitRead]


class LoyaltyBalanceRead(BaseModel):
    user_id: UUID
    points: int
    lifetime_points: int
    tier: LoyaltyTier
    next_tier: Optional[LoyaltyTier] = None
    points_to_next_tier: Optional[int] = None


class AwardPointsRequest(ApiRequest):
    """Award either an explicit number of points or points for an order total."""

    points: Optional[int] = Field(None, ge=1, le=100_000)
    order_total: Optional[float] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_one_source(self) -> "AwardPointsRequest":
        if (self.points is None) == (self.order_total is None):
            raise ValueError("provide exactly one of points or order_total")
        return self


class LoyaltyRewardRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    restaurant_id: UUID
    name: str
    description: Optional[str]
    points_required: int
    is_active: bool


class LightningDealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    restaurant_id: UUID
    title: str
    description: Optional[str]
    original_price: Decimal
    deal_price: Decimal
    total_available: int
    claimed: int
    remaining: int
    start_time: datetime
    end_time: datetime
