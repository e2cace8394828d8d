from app.schemas.waitlist import (
    QueueEntryCreate,
    QueueEntryRead,
    QueueSnapshot,
    QueueStatus,
    QueueStatusUpdate,
    WaitTimeUpdate,
)
from app.schemas.redemption import (
    GenerateCodeRequest,
    GenerateCodeResponse,
    RedemptionClaims,
    RedemptionRead,
    RedemptionResult,
    RedemptionType,
    ScanRequest,
    ScanResponse,
)
from app.schemas.loyalty import (
    AwardPointsRequest,
    LightningDealRead,
    LoyaltyBalanceRead,
    LoyaltyRewardRead,
    LoyaltyTier,
    TierRead,
)
from app.schemas.realtime import ServerMessage, ServerMessageType, client_message_adapter

__all__ = [
    "QueueEntryCreate",
    "QueueEntryRead",
    "QueueSnapshot",
    "QueueStatus",
    "QueueStatusUpdate",
    "WaitTimeUpdate",
    "GenerateCodeRequest",
    "GenerateCodeResponse",
    "RedemptionClaims",
    "RedemptionRead",
    "RedemptionResult",
    "RedemptionType",
    "ScanRequest",
    "ScanResponse",
    "AwardPointsRequest",
    "LightningDealRead",
    "LoyaltyBalanceRead",
    "LoyaltyRewardRead",
    "LoyaltyTier",
    "TierRead",
    "ServerMessage",
    "ServerMessageType",
    "client_message_adapter",
]
