"""Loyalty balances, tiers and the promotion catalogue."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NotFoundError
from app.models.loyalty import LightningDeal, LoyaltyReward
from app.models.user import User
from app.schemas.loyalty import LoyaltyBalanceRead, LoyaltyTier, TierBenefitRead, TierRead

if TYPE_CHECKING:
    from app.websocket.channels import ChannelBroker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierBenefit:
    id: str
    title: str
    description: str
    kind: str  # discount, freeItem, priority, special
    validity_days: int
    usage_limit: int
    value: Optional[float] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class Tier:
    id: LoyaltyTier
    name: str
    min_points: int
    description: str
    benefits: Tuple[TierBenefit, ...] = field(default_factory=tuple)

    def to_read(self) -> TierRead:
        return TierRead(
            id=self.id,
            name=self.name,
            min_points=self.min_points,
            description=self.description,
            benefits=[
                TierBenefitRead(
                    id=b.id,
                    title=b.title,
                    description=b.description,
                    kind=b.kind,
                    value=b.value,
                    category=b.category,
                    validity_days=b.validity_days,
                    usage_limit=b.usage_limit,
                )
                for b in self.benefits
            ],
        )


# Ordered lowest to highest; a tier's members may use every benefit at or below it
TIERS: Tuple[Tier, ...] = (
    Tier(
        id=LoyaltyTier.REGULAR,
        name="Regular",
        min_points=0,
        description="Every member starts here",
        benefits=(
            TierBenefit(
                id="birthday-treat",
                title="Birthday Treat",
                description="Free dessert during your birthday month",
                kind="freeItem",
                category="desserts",
                validity_days=30,
                usage_limit=1,
            ),
            TierBenefit(
                id="welcome-discount",
                title="Welcome Discount",
                description="10% off your next visit",
                kind="discount",
                value=10,
                validity_days=30,
                usage_limit=1,
            ),
        ),
    ),
    Tier(
        id=LoyaltyTier.VIP,
        name="VIP",
        min_points=500,
        description="Unlocked at 500 lifetime points",
        benefits=(
            TierBenefit(
                id="priority-seating",
                title="Priority Seating",
                description="Skip ahead when the dining room is busy",
                kind="priority",
                validity_days=7,
                usage_limit=2,
            ),
            TierBenefit(
                id="vip-discount",
                title="VIP Discount",
                description="15% off any order",
                kind="discount",
                value=15,
                validity_days=14,
                usage_limit=3,
            ),
            TierBenefit(
                id="free-appetizer",
                title="Free Appetizer",
                description="One complimentary appetizer",
                kind="freeItem",
                category="appetizers",
                validity_days=14,
                usage_limit=1,
            ),
        ),
    ),
    Tier(
        id=LoyaltyTier.PREMIUM,
        name="Premium",
        min_points=1000,
        description="Unlocked at 1000 lifetime points",
        benefits=(
            TierBenefit(
                id="chef-special",
                title="Chef's Special",
                description="Access to the off-menu chef's special",
                kind="special",
                validity_days=30,
                usage_limit=5,
            ),
            TierBenefit(
                id="premium-discount",
                title="Premium Discount",
                description="20% off any order",
                kind="discount",
                value=20,
                validity_days=30,
                usage_limit=5,
            ),
            TierBenefit(
                id="free-dessert",
                title="Premium Dessert",
                description="Complimentary dessert from the premium menu",
                kind="freeItem",
                category="premium-desserts",
                validity_days=21,
                usage_limit=2,
            ),
            TierBenefit(
                id="valet-service",
                title="Valet Service",
                description="Complimentary valet parking",
                kind="special",
                validity_days=14,
                usage_limit=3,
            ),
        ),
    ),
)


def tier_rank(tier_id: LoyaltyTier) -> int:
    for index, tier in enumerate(TIERS):
        if tier.id == tier_id:
            return index
    raise ValueError(f"Unknown tier: {tier_id}")


def tier_for_points(lifetime_points: int) -> Tier:
    """Highest tier whose threshold the lifetime total reaches."""
    current = TIERS[0]
    for tier in TIERS:
        if lifetime_points >= tier.min_points:
            current = tier
    return current


def next_tier(tier: Tier) -> Optional[Tier]:
    rank = tier_rank(tier.id)
    if rank + 1 < len(TIERS):
        return TIERS[rank + 1]
    return None


def find_benefit(benefit_id: str) -> Optional[Tuple[Tier, TierBenefit]]:
    for tier in TIERS:
        for benefit in tier.benefits:
            if benefit.id == benefit_id:
                return tier, benefit
    return None


def points_for_order(order_total: float) -> int:
    """One point per whole currency unit spent."""
    return max(0, math.floor(order_total))


class LoyaltyService:
    """Service for loyalty balances and the reward/deal catalogue."""

    def __init__(self, session: AsyncSession, broker: Optional["ChannelBroker"] = None):
        self.session = session
        self.broker = broker

    async def get_user(self, user_id: UUID) -> User:
        user = await self.session.get(User, user_id, populate_existing=True)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def get_balance(self, user_id: UUID) -> LoyaltyBalanceRead:
        user = await self.get_user(user_id)
        return self._balance(user.id, user.loyalty_points, user.lifetime_points)

    async def award_points(
        self,
        user_id: UUID,
        points: Optional[int] = None,
        order_total: Optional[float] = None,
        reason: str = "award",
    ) -> LoyaltyBalanceRead:
        """
        Add points to a balance; lifetime points (and therefore tier) grow too.

        Either ``points`` or ``order_total`` must be given.
        """
        if points is None:
            if order_total is None:
                raise ValueError("points or order_total is required")
            points = points_for_order(order_total)
            reason = "order"
        if points < 0:
            raise ValueError("points cannot be negative")

        await self.get_user(user_id)

        if points:
            stmt = (
                update(User)
                .where(User.id == user_id)
                .values(
                    loyalty_points=User.loyalty_points + points,
                    lifetime_points=User.lifetime_points + points,
                )
                .execution_options(synchronize_session=False)
            )
            await self.session.execute(stmt)
            await self.session.commit()
            logger.info("Awarded %d points to user %s (%s)", points, user_id, reason)

        balance = await self.get_balance(user_id)
        if points:
            await self.publish_balance(balance, change=points, reason=reason)
        return balance

    async def deduct_points(self, user_id: UUID, points: int) -> Optional[int]:
        """
        Conditionally subtract points inside the caller's transaction.

        The UPDATE only matches while the balance covers ``points``, so two
        concurrent deductions can never take the balance below zero.

        Returns:
            The remaining balance, or None if the balance was insufficient
        """
        stmt = (
            update(User)
            .where(User.id == user_id)
            .where(User.loyalty_points >= points)
            .values(loyalty_points=User.loyalty_points - points)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            return None

        return await self.session.scalar(
            select(User.loyalty_points).where(User.id == user_id)
        )

    async def publish_balance(
        self, balance: LoyaltyBalanceRead, change: int, reason: str
    ) -> None:
        if self.broker is None:
            return
        payload = balance.model_dump(mode="json")
        payload.update({"change": change, "reason": reason})
        await self.broker.notify_loyalty_update(balance.user_id, payload)

    async def list_rewards(
        self, restaurant_id: UUID, include_inactive: bool = False
    ) -> Sequence[LoyaltyReward]:
        stmt = (
            select(LoyaltyReward)
            .where(LoyaltyReward.restaurant_id == restaurant_id)
            .order_by(LoyaltyReward.points_required)
        )
        if not include_inactive:
            stmt = stmt.where(LoyaltyReward.is_active == True)  # noqa: E712
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_active_deals(
        self, restaurant_id: UUID, now: Optional[datetime] = None
    ) -> Sequence[LightningDeal]:
        """Deals whose claim window contains ``now``, soonest ending first."""
        now = now or datetime.utcnow()
        stmt = (
            select(LightningDeal)
            .where(LightningDeal.restaurant_id == restaurant_id)
            .where(LightningDeal.start_time <= now)
            .where(LightningDeal.end_time >= now)
            .order_by(LightningDeal.end_time)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    @staticmethod
    def list_tiers() -> List[TierRead]:
        return [tier.to_read() for tier in TIERS]

    @staticmethod
    def _balance(user_id: UUID, points: int, lifetime_points: int) -> LoyaltyBalanceRead:
        tier = tier_for_points(lifetime_points)
        upcoming = next_tier(tier)
        return LoyaltyBalanceRead(
            user_id=user_id,
            points=points,
            lifetime_points=lifetime_points,
            tier=tier.id,
            next_tier=upcoming.id if upcoming else None,
            points_to_next_tier=upcoming.min_points - lifetime_points if upcoming else None,
        )
