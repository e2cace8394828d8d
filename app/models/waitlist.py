from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.restaurant import Restaurant
    from app.models.user import User


class QueueEntry(Base):
    """One party's place in a restaurant's virtual waitlist."""

    __tablename__ = "queue_entries"
    __table_args__ = (
        Index("ix_queue_entries_restaurant_status", "restaurant_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    restaurant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("restaurants.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )

    party_size: Mapped[int] = mapped_column(Integer, nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    seating_preference: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # booth, bar, table, patio, none
    sms_notifications: Mapped[bool] = mapped_column(Boolean, default=False)

    # waiting, called, completed, cancelled
    status: Mapped[str] = mapped_column(String(20), default="waiting")
    # Rank among waiting entries; cleared once the entry leaves the queue
    position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    estimated_wait_minutes: Mapped[int] = mapped_column(Integer, default=0)

    joined_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    called_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    actual_wait_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    restaurant: Mapped["Restaurant"] = relationship(
        "Restaurant", back_populates="queue_entries"
    )
    user: Mapped["User"] = relationship("User", back_populates="queue_entries")

    def __repr__(self) -> str:
        return (
            f"<QueueEntry(id={self.id}, status={self.status}, "
            f"position={self.position}, size={self.party_size})>"
        )
