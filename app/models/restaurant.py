from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List
import uuid

from sqlalchemy import JSON, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.user import User
    from app.models.waitlist import QueueEntry
    from app.models.loyalty import LightningDeal, LoyaltyReward


class Restaurant(Base):
    """Restaurant location; ``config["waitlist"]`` holds wait-time settings."""

    __tablename__ = "restaurants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(50), default="America/New_York")
    config: Mapped[Dict[str, Any]] = mapped_column(JSON, default=lambda: {})
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    users: Mapped[List["User"]] = relationship(
        "User", back_populates="restaurant"
    )
    queue_entries: Mapped[List["QueueEntry"]] = relationship(
        "QueueEntry", back_populates="restaurant", cascade="all, delete-orphan"
    )
    loyalty_rewards: Mapped[List["LoyaltyReward"]] = relationship(
        "LoyaltyReward", back_populates="restaurant", cascade="all, delete-orphan"
    )
    lightning_deals: Mapped[List["LightningDeal"]] = relationship(
        "LightningDeal", back_populates="restaurant", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Restaurant(id={self.id}, name={self.name})>"
