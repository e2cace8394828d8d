"""
Redemption engine for scanned QR codes.

A scan verifies the code, checks it was never consumed, applies the
type-specific effect and records the consumption. The effect and the
consumption record commit together or not at all.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import (
    AlreadyRedeemedError,
    DiscountNotApplicableError,
    ExpiredError,
    InsufficientPointsError,
    InvalidCodeError,
    NotFoundError,
    RedemptionError,
    SoldOutError,
    TierNotEligibleError,
    UnauthorizedError,
)
from app.models.loyalty import LightningDeal, LoyaltyReward, Redemption
from app.models.user import User
from app.schemas.redemption import (
    DiscountCodePayload,
    DiscountKind,
    GenerateCodeRequest,
    GenerateCodeResponse,
    LightningCodePayload,
    LoyaltyCodePayload,
    RedemptionClaims,
    RedemptionResult,
    RedemptionType,
    TierCodePayload,
)
from app.services.locks import KeyedLock, redemption_locks
from app.services.loyalty_service import (
    LoyaltyService,
    find_benefit,
    tier_for_points,
    tier_rank,
)
from app.services.qr_codes import QrCodeCodec

if TYPE_CHECKING:
    from app.websocket.channels import ChannelBroker

logger = logging.getLogger(__name__)

STAFF_ROLES = ("staff", "owner", "admin")


def _money(value: Decimal) -> float:
    return float(Decimal(value).quantize(Decimal("0.01")))


# SQLite reports "redemptions.token"; Postgres names the index "redemptions_token_key"
TOKEN_CONSTRAINT_MARKERS = ("redemptions.token", "redemptions_token")


def is_token_conflict(exc: IntegrityError) -> bool:
    """True when the violated constraint is the unique redemption token."""
    detail = str(exc.orig)
    return any(marker in detail for marker in TOKEN_CONSTRAINT_MARKERS)


class RedemptionService:
    """Service for issuing and redeeming QR codes."""

    def __init__(
        self,
        session: AsyncSession,
        codec: Optional[QrCodeCodec] = None,
        broker: Optional["ChannelBroker"] = None,
        locks: KeyedLock = redemption_locks,
    ):
        self.session = session
        self.codec = codec or QrCodeCodec()
        self.broker = broker
        self.locks = locks
        self.loyalty = LoyaltyService(session, broker)

    # Issuance

    async def issue_code(self, request: GenerateCodeRequest) -> GenerateCodeResponse:
        """Sign a single-use code for a customer after checking its target exists."""
        user = await self.session.get(User, request.user_id)
        if user is None:
            raise NotFoundError(f"User {request.user_id} not found")

        restaurant_id = request.restaurant_id
        if request.qr_type == RedemptionType.LOYALTY:
            reward = await self.session.get(LoyaltyReward, request.reward_id)
            if reward is None or not reward.is_active:
                raise NotFoundError(f"Reward {request.reward_id} not found")
            if user.loyalty_points < reward.points_required:
                raise InsufficientPointsError()
            restaurant_id = restaurant_id or reward.restaurant_id
        elif request.qr_type == RedemptionType.LIGHTNING:
            deal = await self.session.get(LightningDeal, request.deal_id)
            if deal is None:
                raise NotFoundError(f"Deal {request.deal_id} not found")
            restaurant_id = restaurant_id or deal.restaurant_id
        elif request.qr_type == RedemptionType.TIER:
            if find_benefit(request.benefit_id) is None:
                raise NotFoundError(f"Tier benefit {request.benefit_id} not found")

        hours = request.expires_in or get_settings().qr_expiry_hours[request.qr_type.value]
        issued = self.codec.issue(
            user.id,
            request.to_payload(),
            expires_in=timedelta(hours=hours),
            restaurant_id=restaurant_id,
        )

        logger.info(
            "Issued %s code %s for user %s (expires %s)",
            request.qr_type.value,
            issued.token,
            user.id,
            issued.expires_at.isoformat(),
        )
        return GenerateCodeResponse(
            qr_code_value=issued.value,
            qr_type=request.qr_type,
            token=issued.token,
            expires_at=issued.expires_at,
        )

    # Redemption

    async def redeem(
        self,
        qr_code_value: str,
        staff_user_id: UUID,
        order_total: Optional[float] = None,
        category: Optional[str] = None,
    ) -> RedemptionResult:
        """
        Redeem a scanned code exactly once.

        Raises:
            UnauthorizedError: Caller is not staff, owner or admin
            InvalidCodeError: Signature, payload or referenced record invalid
            ExpiredError: Code lifetime passed or deal window closed
            AlreadyRedeemedError: Token already consumed or benefit used up
            InsufficientPointsError: Balance below the reward cost
            SoldOutError: Lightning deal at capacity
            DiscountNotApplicableError: Order does not meet discount conditions
            TierNotEligibleError: Customer tier below the benefit's tier
        """
        staff = await self.session.get(User, staff_user_id)
        if staff is None or staff.role not in STAFF_ROLES:
            raise UnauthorizedError()

        claims = self.codec.decode(qr_code_value)
        if (
            staff.role != "admin"
            and claims.rid is not None
            and staff.restaurant_id is not None
            and claims.rid != staff.restaurant_id
        ):
            raise UnauthorizedError("QR code belongs to another restaurant")

        async with self.locks.hold(*self._lock_keys(claims)):
            if await self._is_consumed(claims.jti):
                raise AlreadyRedeemedError()

            customer = await self.session.get(User, claims.sub, populate_existing=True)
            if customer is None:
                raise InvalidCodeError("Customer not found")

            now = datetime.utcnow()
            # A failure rolls back to the savepoint only; loaded objects stay usable
            try:
                async with self.session.begin_nested():
                    result, record = await self._apply(
                        claims, customer, staff, now, order_total, category
                    )
                    self.session.add(record)
            except IntegrityError as exc:
                if not is_token_conflict(exc):
                    raise
                raise AlreadyRedeemedError() from exc
            except RedemptionError as exc:
                logger.info("Redemption of %s refused: %s", claims.jti, exc.reason)
                raise
            await self.session.commit()

        logger.info(
            "Redeemed %s code %s for user %s by staff %s",
            claims.code_type.value,
            claims.jti,
            customer.id,
            staff.id,
        )
        await self._publish(result, record)
        return result

    async def history(self, user_id: UUID, limit: int = 50) -> Sequence[Redemption]:
        stmt = (
            select(Redemption)
            .where(Redemption.user_id == user_id)
            .order_by(Redemption.redeemed_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    def _lock_keys(self, claims: RedemptionClaims) -> List[str]:
        keys = [f"token:{claims.jti}"]
        code = claims.code
        if isinstance(code, LightningCodePayload):
            keys.append(f"deal:{code.deal_id}")
        elif isinstance(code, (LoyaltyCodePayload, TierCodePayload)):
            keys.append(f"user:{claims.sub}")
        return keys

    async def _is_consumed(self, token: str) -> bool:
        existing = await self.session.scalar(
            select(Redemption.id).where(Redemption.token == token)
        )
        return existing is not None

    async def _apply(
        self,
        claims: RedemptionClaims,
        customer: User,
        staff: User,
        now: datetime,
        order_total: Optional[float],
        category: Optional[str],
    ) -> Tuple[RedemptionResult, Redemption]:
        record = Redemption(
            id=uuid.uuid4(),
            token=claims.jti,
            code_type=claims.code_type.value,
            user_id=customer.id,
            staff_user_id=staff.id,
            restaurant_id=claims.rid,
            redeemed_at=now,
        )
        base = dict(
            id=record.id,
            type=claims.code_type,
            user_id=customer.id,
            token=claims.jti,
            redeemed_at=now,
        )

        code = claims.code
        if isinstance(code, LoyaltyCodePayload):
            result = await self._redeem_loyalty(code, customer, record, base)
        elif isinstance(code, DiscountCodePayload):
            result = self._redeem_discount(code, record, base, order_total, category)
        elif isinstance(code, LightningCodePayload):
            result = await self._redeem_lightning(code, record, base, now)
        else:
            result = await self._redeem_tier(code, customer, record, base, now)

        record.details = result.model_dump(
            mode="json",
            exclude={"id", "type", "user_id", "token", "redeemed_at"},
            exclude_none=True,
        )
        return result, record

    async def _redeem_loyalty(
        self, code: LoyaltyCodePayload, customer: User, record: Redemption, base: dict
    ) -> RedemptionResult:
        reward = await self.session.get(LoyaltyReward, code.reward_id)
        if reward is None or not reward.is_active:
            raise InvalidCodeError("Reward not found")

        remaining = await self.loyalty.deduct_points(customer.id, reward.points_required)
        if remaining is None:
            raise InsufficientPointsError()

        record.reference_id = str(reward.id)
        record.points_deducted = reward.points_required
        record.restaurant_id = record.restaurant_id or reward.restaurant_id

        return RedemptionResult(
            **base,
            message=f"Reward redeemed: {reward.name}",
            reward={
                "id": str(reward.id),
                "name": reward.name,
                "description": reward.description,
                "points_required": reward.points_required,
            },
            points_deducted=reward.points_required,
            remaining_points=remaining,
        )

    def _redeem_discount(
        self,
        code: DiscountCodePayload,
        record: Redemption,
        base: dict,
        order_total: Optional[float],
        category: Optional[str],
    ) -> RedemptionResult:
        # Constraints are only checked against order context the caller supplies
        if code.min_order_amount is not None and order_total is not None:
            if order_total < code.min_order_amount:
                raise DiscountNotApplicableError(
                    f"Minimum order of {code.min_order_amount:.2f} required"
                )
        if code.category and category is not None:
            if category.strip().lower() != code.category.strip().lower():
                raise DiscountNotApplicableError(f"Discount only applies to {code.category}")

        if code.kind == DiscountKind.PERCENTAGE:
            value = round(order_total * code.amount / 100, 2) if order_total is not None else None
            message = f"{code.amount:g}% discount applied"
        else:
            value = round(min(code.amount, order_total), 2) if order_total is not None else code.amount
            message = f"{code.amount:.2f} discount applied"

        record.reference_id = code.category

        return RedemptionResult(
            **base,
            message=message,
            discount_amount=code.amount,
            discount_type=code.kind,
            discount_value=value,
        )

    async def _redeem_lightning(
        self, code: LightningCodePayload, record: Redemption, base: dict, now: datetime
    ) -> RedemptionResult:
        deal = await self.session.get(LightningDeal, code.deal_id, populate_existing=True)
        if deal is None:
            raise InvalidCodeError("Deal not found")
        if now < deal.start_time:
            raise ExpiredError("Deal has not started yet")
        if now > deal.end_time:
            raise ExpiredError("Deal has ended")

        # Compare-and-swap on ``claimed``; only one claimant can take the last slot
        stmt = (
            update(LightningDeal)
            .where(LightningDeal.id == deal.id)
            .where(LightningDeal.claimed < LightningDeal.total_available)
            .where(LightningDeal.start_time <= now)
            .where(LightningDeal.end_time >= now)
            .values(claimed=LightningDeal.claimed + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != 1:
            raise SoldOutError()

        claimed = await self.session.scalar(
            select(LightningDeal.claimed).where(LightningDeal.id == deal.id)
        )

        record.reference_id = str(deal.id)
        record.restaurant_id = record.restaurant_id or deal.restaurant_id

        return RedemptionResult(
            **base,
            message=f"Lightning deal claimed: {deal.title}",
            deal={
                "id": str(deal.id),
                "title": deal.title,
                "original_price": _money(deal.original_price),
                "deal_price": _money(deal.deal_price),
                "claimed": claimed,
                "total_available": deal.total_available,
            },
            savings=_money(deal.original_price - deal.deal_price),
            remaining_quantity=max(0, deal.total_available - claimed),
        )

    async def _redeem_tier(
        self,
        code: TierCodePayload,
        customer: User,
        record: Redemption,
        base: dict,
        now: datetime,
    ) -> RedemptionResult:
        found = find_benefit(code.benefit_id)
        if found is None:
            raise InvalidCodeError("Unknown tier benefit")
        benefit_tier, benefit = found

        user_tier = tier_for_points(customer.lifetime_points)
        if tier_rank(user_tier.id) < tier_rank(benefit_tier.id):
            raise TierNotEligibleError(
                f"{benefit.title} requires {benefit_tier.name} tier"
            )

        window_start = now - timedelta(days=benefit.validity_days)
        used = await self.session.scalar(
            select(func.count(Redemption.id))
            .where(Redemption.user_id == customer.id)
            .where(Redemption.code_type == RedemptionType.TIER.value)
            .where(Redemption.reference_id == benefit.id)
            .where(Redemption.redeemed_at >= window_start)
        )
        if used >= benefit.usage_limit:
            raise AlreadyRedeemedError(f"{benefit.title} usage limit reached")

        record.reference_id = benefit.id

        return RedemptionResult(
            **base,
            message=f"Tier benefit applied: {benefit.title}",
            user_tier=user_tier.id.value,
            benefit={
                "id": benefit.id,
                "title": benefit.title,
                "description": benefit.description,
                "kind": benefit.kind,
                "value": benefit.value,
                "category": benefit.category,
                "uses_remaining": benefit.usage_limit - used - 1,
            },
        )

    async def _publish(self, result: RedemptionResult, record: Redemption) -> None:
        if self.broker is None:
            return

        if result.type == RedemptionType.LOYALTY:
            balance = await self.loyalty.get_balance(result.user_id)
            await self.loyalty.publish_balance(
                balance, change=-(result.points_deducted or 0), reason="redemption"
            )
        elif result.type == RedemptionType.LIGHTNING and record.restaurant_id is not None:
            await self.broker.notify_promotion_update(
                record.restaurant_id,
                {
                    "deal_id": result.deal["id"],
                    "claimed": result.deal["claimed"],
                    "remaining": result.remaining_quantity,
                },
            )
