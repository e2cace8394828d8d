# Business logic services
from app.services.queue_service import QueueService
from app.services.wait_time import WaitTimeConfig, WaitTimeEstimator

# Loyalty and redemption services
from app.services.loyalty_service import LoyaltyService
from app.services.qr_codes import QrCodeCodec
from app.services.redemption_service import RedemptionService

__all__ = [
    "QueueService",
    "WaitTimeConfig",
    "WaitTimeEstimator",
    "LoyaltyService",
    "QrCodeCodec",
    "RedemptionService",
]
