from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.schemas.base import ApiRequest


class RedemptionType(str, Enum):
    LOYALTY = "loyalty"
    DISCOUNT = "discount"
    LIGHTNING = "lightning"
    TIER = "tier"


class DiscountKind(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# Code payloads, discriminated by ``type``


class LoyaltyCodePayload(BaseModel):
    type: Literal["loyalty"] = "loyalty"
    reward_id: UUID


class DiscountCodePayload(BaseModel):
    type: Literal["discount"] = "discount"
    amount: float = Field(..., gt=0)
    kind: DiscountKind
    min_order_amount: Optional[float] = Field(None, ge=0)
    category: Optional[str] = Field(None, max_length=50)

    @model_validator(mode="after")
    def check_percentage_range(self) -> "DiscountCodePayload":
        if self.kind == DiscountKind.PERCENTAGE and self.amount > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self


class LightningCodePayload(BaseModel):
    type: Literal["lightning"] = "lightning"
    deal_id: UUID


class TierCodePayload(BaseModel):
    type: Literal["tier"] = "tier"
    benefit_id: str = Field(..., min_length=1, max_length=64)


CodePayload = Annotated[
    Union[LoyaltyCodePayload, DiscountCodePayload, LightningCodePayload, TierCodePayload],
    Field(discriminator="type"),
]


class RedemptionClaims(BaseModel):
    """Decoded, verified contents of a redemption code."""

    sub: UUID  # customer the code was issued to
    jti: str = Field(..., min_length=8, max_length=64)
    exp: int
    iat: Optional[int] = None
    rid: Optional[UUID] = None  # restaurant scope, if any
    code: CodePayload

    @property
    def code_type(self) -> RedemptionType:
        return RedemptionType(self.code.type)


# API requests


class GenerateCodeRequest(ApiRequest):
    """Schema for issuing a redemption code to a customer."""

    user_id: UUID
    qr_type: RedemptionType
    restaurant_id: Optional[UUID] = None
    reward_id: Optional[UUID] = None
    deal_id: Optional[UUID] = None
    benefit_id: Optional[str] = None
    discount_amount: Optional[float] = Field(None, gt=0)
    discount_type: Optional[DiscountKind] = None
    min_order_amount: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    expires_in: Optional[int] = Field(None, ge=1, le=720, description="Lifetime in hours")

    @model_validator(mode="after")
    def check_type_fields(self) -> "GenerateCodeRequest":
        required = {
            RedemptionType.LOYALTY: ("reward_id",),
            RedemptionType.DISCOUNT: ("discount_amount", "discount_type"),
            RedemptionType.LIGHTNING: ("deal_id",),
            RedemptionType.TIER: ("benefit_id",),
        }[self.qr_type]
        missing = [name for name in required if getattr(self, name) is None]
        if missing:
            raise ValueError(f"{self.qr_type.value} codes require: {', '.join(missing)}")
        return self

    def to_payload(self) -> Union[
        LoyaltyCodePayload, DiscountCodePayload, LightningCodePayload, TierCodePayload
    ]:
        if self.qr_type == RedemptionType.LOYALTY:
            return LoyaltyCodePayload(reward_id=self.reward_id)
        if self.qr_type == RedemptionType.DISCOUNT:
            return DiscountCodePayload(
                amount=self.discount_amount,
                kind=self.discount_type,
                min_order_amount=self.min_order_amount,
                category=self.category,
            )
        if self.qr_type == RedemptionType.LIGHTNING:
            return LightningCodePayload(deal_id=self.deal_id)
        return TierCodePayload(benefit_id=self.benefit_id)


class GenerateCodeResponse(BaseModel):
    qr_code_value: str
    qr_type: RedemptionType
    token: str
    expires_at: datetime


class ScanRequest(ApiRequest):
    """Schema for a staff scan; order context feeds discount checks."""

    qr_code_value: str = Field(..., min_length=1)
    staff_user_id: UUID
    order_total: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None


# Results


class RedemptionResult(BaseModel):
    """Successful redemption with type-specific details."""

    id: UUID
    type: RedemptionType
    user_id: UUID
    token: str
    message: str
    redeemed_at: datetime

    # loyalty
    reward: Optional[Dict[str, Any]] = None
    points_deducted: Optional[int] = None
    remaining_points: Optional[int] = None

    # discount
    discount_amount: Optional[float] = None
    discount_type: Optional[DiscountKind] = None
    discount_value: Optional[float] = None

    # lightning
    deal: Optional[Dict[str, Any]] = None
    savings: Optional[float] = None
    remaining_quantity: Optional[int] = None

    # tier
    user_tier: Optional[str] = None
    benefit: Optional[Dict[str, Any]] = None


class ScanResponse(BaseModel):
    message: str
    qr_type: RedemptionType
    redemption: RedemptionResult


class RedemptionRead(BaseModel):
    """Schema for reading a stored redemption."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    token: str
    code_type: str
    user_id: UUID
    staff_user_id: UUID
    restaurant_id: Optional[UUID]
    reference_id: Optional[str]
    points_deducted: Optional[int]
    details: Dict[str, Any]
    redeemed_at: datetime
