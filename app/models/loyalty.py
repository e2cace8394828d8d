from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Optional
import uuid

from sqlalchemy import JSON, Boolean, CheckConstraint, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.restaurant import Restaurant


class LoyaltyReward(Base):
    """Reward a customer can buy with loyalty points."""

    __tablename__ = "loyalty_rewards"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    restaurant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("restaurants.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    points_required: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)

    restaurant: Mapped["Restaurant"] = relationship(
        "Restaurant", back_populates="loyalty_rewards"
    )

    def __repr__(self) -> str:
        return f"<LoyaltyReward(id={self.id}, name={self.name}, points={self.points_required})>"


class LightningDeal(Base):
    """Time-boxed, quantity-limited offer."""

    __tablename__ = "lightning_deals"
    __table_args__ = (
        CheckConstraint("claimed >= 0", name="ck_lightning_deals_claimed_non_negative"),
        CheckConstraint("claimed <= total_available", name="ck_lightning_deals_claimed_capacity"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    restaurant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("restaurants.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    original_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    deal_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    total_available: Mapped[int] = mapped_column(Integer, nullable=False)
    claimed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    start_time: Mapped[datetime] = mapped_column(nullable=False)
    end_time: Mapped[datetime] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)

    restaurant: Mapped["Restaurant"] = relationship(
        "Restaurant", back_populates="lightning_deals"
    )

    @property
    def remaining(self) -> int:
        return max(0, self.total_available - self.claimed)

    def __repr__(self) -> str:
        return f"<LightningDeal(id={self.id}, claimed={self.claimed}/{self.total_available})>"


class Redemption(Base):
    """Consumption record for a redemption code; ``token`` is unique."""

    __tablename__ = "redemptions"
    __table_args__ = (
        Index("ix_redemptions_user_type_reference", "user_id", "code_type", "reference_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    code_type: Mapped[str] = mapped_column(String(20), nullable=False)  # loyalty, discount, lightning, tier

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    staff_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    restaurant_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("restaurants.id"), nullable=True
    )

    # Reward id, deal id or tier benefit id depending on code_type
    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    points_deducted: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=lambda: {})

    redeemed_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Redemption(id={self.id}, type={self.code_type}, token={self.token})>"
