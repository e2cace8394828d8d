"""
REST API endpoints for the virtual waitlist.
"""
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.schemas.waitlist import (
    ExpireCallsRequest,
    ExpireCallsResponse,
    QueueEntryCreate,
    QueueEntryRead,
    QueueSnapshot,
    QueueStatusUpdate,
    WaitTimeUpdate,
)
from app.services.queue_service import QueueService
from app.websocket.channels import ChannelBroker, get_broker

router = APIRouter(prefix="/api", tags=["waitlist"])


@router.post("/queue-entries", response_model=QueueEntryRead, status_code=201)
async def join_queue(
    data: QueueEntryCreate,
    session: AsyncSession = Depends(get_session),
    broker: ChannelBroker = Depends(get_broker),
) -> QueueEntryRead:
    """
    Join a restaurant's queue.

    Returns the entry with its position and estimated wait.
    """
    entry = await QueueService(session, broker).join(data)
    return QueueEntryRead.model_validate(entry)


@router.get("/queue-entries/{entry_id}", response_model=QueueEntryRead)
async def get_queue_entry(
    entry_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> QueueEntryRead:
    entry = await QueueService(session).get_entry(entry_id)
    return QueueEntryRead.model_validate(entry)


@router.patch("/queue-entries/{entry_id}", response_model=QueueEntryRead)
async def update_queue_entry(
    entry_id: UUID,
    data: QueueStatusUpdate,
    session: AsyncSession = Depends(get_session),
    broker: ChannelBroker = Depends(get_broker),
) -> QueueEntryRead:
    """
    Move an entry through its lifecycle.

    Allowed: waiting -> called | cancelled, called -> completed | cancelled.
    ``ready`` and ``seated`` are accepted for called and completed.
    """
    entry = await QueueService(session, broker).transition(entry_id, data.status)
    return QueueEntryRead.model_validate(entry)


@router.get("/restaurants/{restaurant_id}/queue", response_model=QueueSnapshot)
async def get_restaurant_queue(
    restaurant_id: UUID,
    session: AsyncSession = Depends(get_session),
) -> QueueSnapshot:
    return await QueueService(session).get_snapshot(restaurant_id)


@router.post("/waitlist/{restaurant_id}/update-times", response_model=QueueSnapshot)
async def update_wait_times(
    restaurant_id: UUID,
    data: WaitTimeUpdate,
    session: AsyncSession = Depends(get_session),
    broker: ChannelBroker = Depends(get_broker),
) -> QueueSnapshot:
    """Set the average table turnover and re-estimate every waiting party."""
    service = QueueService(session, broker)
    await service.update_wait_times(
        restaurant_id,
        average_table_turnover=data.average_table_turnover,
        concurrent_tables=data.concurrent_tables,
    )
    return await service.get_snapshot(restaurant_id)


@router.post("/waitlist/{restaurant_id}/expire-calls", response_model=ExpireCallsResponse)
async def expire_called_entries(
    restaurant_id: UUID,
    data: Optional[ExpireCallsRequest] = None,
    session: AsyncSession = Depends(get_session),
    broker: ChannelBroker = Depends(get_broker),
) -> ExpireCallsResponse:
    """Cancel called parties that were not seated within the grace window."""
    expired = await QueueService(session, broker).expire_stale_calls(
        restaurant_id, grace_minutes=data.grace_minutes if data else None
    )
    return ExpireCallsResponse(expired=len(expired), entry_ids=[e.id for e in expired])
