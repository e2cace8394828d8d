"""
Virtual waitlist: joins, staff transitions and position bookkeeping.

Positions of a restaurant's waiting entries are always 1..N in join order.
Every mutation that can shift them renumbers the whole waiting set inside
the same transaction, holding the restaurant row lock.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence, Set, Tuple, Union
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.errors import InvalidTransitionError, NotFoundError
from app.models.restaurant import Restaurant
from app.models.user import User
from app.models.waitlist import QueueEntry
from app.schemas.waitlist import (
    STATUS_ALIASES,
    QueueEntryCreate,
    QueueEntryRead,
    QueueSnapshot,
    QueueStatus,
)
from app.services.locks import KeyedLock, queue_locks
from app.services.sms_notifier import SmsNotifier
from app.services.wait_time import WaitTimeConfig, WaitTimeEstimator

if TYPE_CHECKING:
    from app.websocket.channels import ChannelBroker

logger = logging.getLogger(__name__)

# Allowed transitions; terminal states have no entry
TRANSITIONS: Dict[str, Set[str]] = {
    QueueStatus.WAITING.value: {QueueStatus.CALLED.value, QueueStatus.CANCELLED.value},
    QueueStatus.CALLED.value: {QueueStatus.COMPLETED.value, QueueStatus.CANCELLED.value},
}

# SMS events
JOINED = "joined"
MOVED_UP = "moved_up"
TABLE_READY = "table_ready"


def normalize_status(status: Union[QueueStatus, str]) -> QueueStatus:
    if isinstance(status, QueueStatus):
        return status
    lowered = status.strip().lower()
    try:
        return QueueStatus(STATUS_ALIASES.get(lowered, lowered))
    except ValueError:
        raise InvalidTransitionError(f"Unknown queue status: {status}")


class QueueService:
    """Service for queue entry lifecycle and wait-time recompute."""

    def __init__(
        self,
        session: AsyncSession,
        broker: Optional["ChannelBroker"] = None,
        locks: KeyedLock = queue_locks,
        notifier: Optional[SmsNotifier] = None,
    ):
        self.session = session
        self.broker = broker
        self.locks = locks
        self.notifier = notifier or SmsNotifier()

    async def join(self, data: QueueEntryCreate) -> QueueEntry:
        """
        Add a party to the end of a restaurant's queue.

        The new entry gets position N+1 and the estimate for N parties ahead.
        """
        if await self.session.get(Restaurant, data.restaurant_id) is None:
            raise NotFoundError(f"Restaurant {data.restaurant_id} not found")
        if await self.session.get(User, data.user_id) is None:
            raise NotFoundError(f"User {data.user_id} not found")

        async with self.locks.hold(self._lock_key(data.restaurant_id)):
            restaurant = await self._lock_restaurant(data.restaurant_id)

            # joined_at is the FIFO key, so it must be strictly increasing
            joined_at = datetime.utcnow()
            latest = await self.session.scalar(
                select(func.max(QueueEntry.joined_at))
                .where(QueueEntry.restaurant_id == data.restaurant_id)
                .where(QueueEntry.status == QueueStatus.WAITING.value)
            )
            if latest is not None and joined_at <= latest:
                joined_at = latest + timedelta(microseconds=1)

            entry = QueueEntry(
                restaurant_id=data.restaurant_id,
                user_id=data.user_id,
                party_size=data.party_size,
                phone=data.phone,
                notes=data.notes,
                seating_preference=(
                    data.seating_preference.value if data.seating_preference else None
                ),
                sms_notifications=data.sms_notifications,
                status=QueueStatus.WAITING.value,
                estimated_wait_minutes=0,
                joined_at=joined_at,
            )
            self.session.add(entry)
            await self.session.flush()

            changed, _ = await self._renumber(restaurant)
            await self.session.commit()

        logger.info(
            "Party of %d joined queue at %s: entry %s position %s",
            entry.party_size,
            entry.restaurant_id,
            entry.id,
            entry.position,
        )
        await self._publish(changed)
        await self._notify(entry, JOINED)
        return entry

    async def get_entry(self, entry_id: UUID) -> QueueEntry:
        entry = await self.session.get(QueueEntry, entry_id, populate_existing=True)
        if entry is None:
            raise NotFoundError(f"Queue entry {entry_id} not found")
        return entry

    async def get_waiting(self, restaurant_id: UUID) -> Sequence[QueueEntry]:
        stmt = (
            select(QueueEntry)
            .where(QueueEntry.restaurant_id == restaurant_id)
            .where(QueueEntry.status == QueueStatus.WAITING.value)
            .order_by(QueueEntry.position, QueueEntry.joined_at)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def get_snapshot(self, restaurant_id: UUID) -> QueueSnapshot:
        restaurant = await self.session.get(Restaurant, restaurant_id)
        if restaurant is None:
            raise NotFoundError(f"Restaurant {restaurant_id} not found")

        config = WaitTimeConfig.from_restaurant_config(restaurant.config)
        waiting = await self.get_waiting(restaurant_id)
        return QueueSnapshot(
            restaurant_id=restaurant_id,
            total_waiting=len(waiting),
            average_table_turnover=config.average_table_turnover,
            concurrent_tables=config.concurrent_tables,
            queue=[QueueEntryRead.model_validate(e) for e in waiting],
        )

    async def transition(
        self, entry_id: UUID, status: Union[QueueStatus, str]
    ) -> QueueEntry:
        """
        Move an entry to a new status.

        Raises:
            InvalidTransitionError: Entry missing, already terminal, or the
                move is not waiting->called/cancelled or called->completed/cancelled
        """
        target = normalize_status(status)

        entry = await self.session.get(QueueEntry, entry_id)
        if entry is None:
            raise InvalidTransitionError(f"Queue entry {entry_id} not found")

        async with self.locks.hold(self._lock_key(entry.restaurant_id)):
            restaurant = await self._lock_restaurant(entry.restaurant_id)
            await self.session.refresh(entry)

            previous = entry.status
            if target.value not in TRANSITIONS.get(previous, set()):
                raise InvalidTransitionError(
                    f"Cannot move queue entry from {previous} to {target.value}"
                )

            changed = self._apply(entry, target, datetime.utcnow())
            moved: List[QueueEntry] = []
            if previous == QueueStatus.WAITING.value:
                renumbered, moved = await self._renumber(restaurant)
                changed.extend(renumbered)
            await self.session.commit()

        logger.info("Queue entry %s: %s -> %s", entry.id, previous, target.value)
        await self._publish(changed)
        if target == QueueStatus.CALLED:
            await self._notify(entry, TABLE_READY)
        for other in moved:
            await self._notify(other, MOVED_UP)
        return entry

    async def call(self, entry_id: UUID) -> QueueEntry:
        return await self.transition(entry_id, QueueStatus.CALLED)

    async def seat(self, entry_id: UUID) -> QueueEntry:
        return await self.transition(entry_id, QueueStatus.COMPLETED)

    async def cancel(self, entry_id: UUID) -> QueueEntry:
        return await self.transition(entry_id, QueueStatus.CANCELLED)

    async def update_wait_times(
        self,
        restaurant_id: UUID,
        average_table_turnover: int,
        concurrent_tables: Optional[int] = None,
    ) -> List[QueueEntry]:
        """
        Store a new turnover (and optionally table count) and re-estimate the queue.

        Returns:
            Waiting entries in position order
        """
        async with self.locks.hold(self._lock_key(restaurant_id)):
            restaurant = await self._lock_restaurant(restaurant_id)

            current = WaitTimeConfig.from_restaurant_config(restaurant.config)
            updated = WaitTimeConfig(
                average_table_turnover=average_table_turnover,
                concurrent_tables=concurrent_tables or current.concurrent_tables,
            )
            # Reassign so the JSON column is flagged dirty
            restaurant.config = {**(restaurant.config or {}), "waitlist": updated.to_config()}

            changed, _ = await self._renumber(restaurant)
            await self.session.commit()

        logger.info(
            "Wait times for %s: turnover=%d tables=%d (%d entries changed)",
            restaurant_id,
            updated.average_table_turnover,
            updated.concurrent_tables,
            len(changed),
        )
        await self._publish(changed)
        return list(await self.get_waiting(restaurant_id))

    async def expire_stale_calls(
        self,
        restaurant_id: Optional[UUID] = None,
        grace_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[QueueEntry]:
        """
        Cancel called entries that were not seated within the grace window.

        Only runs when asked; nothing expires on its own.
        """
        grace = get_settings().ready_grace_minutes if grace_minutes is None else grace_minutes
        cutoff = (now or datetime.utcnow()) - timedelta(minutes=grace)

        stmt = (
            select(QueueEntry)
            .where(QueueEntry.status == QueueStatus.CALLED.value)
            .where(QueueEntry.called_at <= cutoff)
        )
        if restaurant_id is not None:
            stmt = stmt.where(QueueEntry.restaurant_id == restaurant_id)
        result = await self.session.execute(stmt)
        candidates = result.scalars().all()

        expired = []
        for entry in candidates:
            try:
                expired.append(await self.cancel(entry.id))
            except InvalidTransitionError:
                # Seated or cancelled by staff since the scan
                logger.debug("Queue entry %s changed before expiry", entry.id)

        if expired:
            logger.info("Expired %d called entries older than %d minutes", len(expired), grace)
        return expired

    def _apply(self, entry: QueueEntry, target: QueueStatus, now: datetime) -> List[QueueEntry]:
        entry.status = target.value
        entry.updated_at = now

        if target == QueueStatus.CALLED:
            entry.called_at = now
        elif target == QueueStatus.COMPLETED:
            entry.completed_at = now
            entry.actual_wait_minutes = max(0, round((now - entry.joined_at).total_seconds() / 60))
        elif target == QueueStatus.CANCELLED:
            entry.cancelled_at = now

        if entry.position is not None:
            entry.position = None
            entry.estimated_wait_minutes = 0
        return [entry]

    async def _lock_restaurant(self, restaurant_id: UUID) -> Restaurant:
        stmt = (
            select(Restaurant)
            .where(Restaurant.id == restaurant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        restaurant = await self.session.scalar(stmt)
        if restaurant is None:
            raise NotFoundError(f"Restaurant {restaurant_id} not found")
        return restaurant

    async def _renumber(
        self, restaurant: Restaurant
    ) -> Tuple[List[QueueEntry], List[QueueEntry]]:
        """Returns entries whose position or estimate changed, and those that moved up."""
        # Pending status changes must reach the database before the reload
        await self.session.flush()
        estimator = WaitTimeEstimator(WaitTimeConfig.from_restaurant_config(restaurant.config))
        waiting = await self.get_waiting(restaurant.id)
        before = {e.id: e.position for e in waiting}
        changed = estimator.recompute(waiting)
        moved = [
            e for e in changed
            if before[e.id] is not None and e.position < before[e.id]
        ]
        return changed, moved

    def _lock_key(self, restaurant_id: UUID) -> str:
        return f"restaurant:{restaurant_id}"

    async def _publish(self, entries: List[QueueEntry]) -> None:
        if self.broker is None:
            return

        seen = set()
        for entry in entries:
            if entry.id in seen:
                continue
            seen.add(entry.id)
            await self.broker.notify_queue_update(
                QueueEntryRead.model_validate(entry).model_dump(mode="json")
            )

    async def _notify(self, entry: QueueEntry, event: str) -> None:
        """Text the customer about ``event`` if they opted in."""
        if not (entry.sms_notifications and entry.phone and self.notifier.is_configured):
            return

        customer = await self.session.get(User, entry.user_id)
        restaurant = await self.session.get(Restaurant, entry.restaurant_id)
        if customer is None or restaurant is None:
            return

        if event == JOINED:
            await self.notifier.send_waitlist_joined(
                entry.phone, customer.name, restaurant.name,
                entry.position, entry.estimated_wait_minutes,
            )
        elif event == MOVED_UP:
            await self.notifier.send_position_update(
                entry.phone, customer.name, restaurant.name,
                entry.position, entry.estimated_wait_minutes,
            )
        elif event == TABLE_READY:
            await self.notifier.send_table_ready(
                entry.phone, customer.name, restaurant.name,
                get_settings().ready_grace_minutes,
            )
