from app.models.restaurant import Restaurant
from app.models.user import User
from app.models.waitlist import QueueEntry
from app.models.loyalty import LightningDeal, LoyaltyReward, Redemption

__all__ = [
    "Restaurant",
    "User",
    "QueueEntry",
    "LoyaltyReward",
    "LightningDeal",
    "Redemption",
]
