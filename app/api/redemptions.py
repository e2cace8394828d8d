"""
REST API endpoints for QR code issuance and staff scanning.
"""
from __future__ import annotations

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.schemas.redemption import (
    GenerateCodeRequest,
    GenerateCodeResponse,
    RedemptionRead,
    ScanRequest,
    ScanResponse,
)
from app.services.redemption_service import RedemptionService
from app.websocket.channels import ChannelBroker, get_broker

router = APIRouter(prefix="/api", tags=["redemptions"])


@router.post("/generate-qr", response_model=GenerateCodeResponse, status_code=201)
async def generate_qr(
    data: GenerateCodeRequest,
    session: AsyncSession = Depends(get_session),
) -> GenerateCodeResponse:
    """Issue a signed single-use code for a reward, discount, deal or tier benefit."""
    return await RedemptionService(session).issue_code(data)


@router.post("/scan-qr", response_model=ScanResponse)
async def scan_qr(
    data: ScanRequest,
    session: AsyncSession = Depends(get_session),
    broker: ChannelBroker = Depends(get_broker),
) -> ScanResponse:
    """
    Redeem a scanned code.

    Staff, owners and admins only. Failures return 4xx with
    ``{message, reason}``; the message is shown to staff as-is.
    """
    result = await RedemptionService(session, broker=broker).redeem(
        data.qr_code_value,
        data.staff_user_id,
        order_total=data.order_total,
        category=data.category,
    )
    return ScanResponse(message=result.message, qr_type=result.type, redemption=result)


@router.get("/users/{user_id}/redemptions", response_model=List[RedemptionRead])
async def list_redemptions(
    user_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
) -> List[RedemptionRead]:
    records = await RedemptionService(session).history(user_id, limit=limit)
    return [RedemptionRead.model_validate(r) for r in records]
