"""
Error taxonomy for queue, redemption and realtime operations.

Every error carries a machine-readable ``reason`` and the HTTP status the
API layer renders it with. Messages are shown verbatim to staff.
"""
from __future__ import annotations

from typing import Optional


class RestaurantError(Exception):
    """Base exception for domain errors surfaced to callers."""

    reason = "error"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class NotFoundError(RestaurantError):
    """Raised when a referenced record does not exist."""

    reason = "not_found"
    status_code = 404
    default_message = "Not found"


class UnauthorizedError(RestaurantError):
    """Raised when the caller lacks the staff role for an action."""

    reason = "unauthorized"
    status_code = 403
    default_message = "Unauthorized: Only staff members can scan QR codes"


class InvalidTransitionError(RestaurantError):
    """Raised when a queue entry cannot move to the requested status."""

    reason = "invalid_transition"
    status_code = 409
    default_message = "Invalid queue status transition"


# Redemption failures


class RedemptionError(RestaurantError):
    """Base exception for failed redemptions."""

    reason = "redemption_failed"


class InvalidCodeError(RedemptionError):
    reason = "invalid_code"
    default_message = "Invalid QR code"


class ExpiredError(RedemptionError):
    reason = "expired"
    status_code = 410
    default_message = "QR code has expired"


class AlreadyRedeemedError(RedemptionError):
    reason = "already_redeemed"
    status_code = 409
    default_message = "Already used"


class InsufficientPointsError(RedemptionError):
    reason = "insufficient_points"
    default_message = "Not enough points to redeem this reward"


class SoldOutError(RedemptionError):
    reason = "sold_out"
    status_code = 409
    default_message = "Sold Out"


class DiscountNotApplicableError(RedemptionError):
    reason = "discount_not_applicable"
    default_message = "Discount conditions not met"


class TierNotEligibleError(RedemptionError):
    reason = "tier_not_eligible"
    status_code = 403
    default_message = "Loyalty tier too low for this benefit"


# Realtime client failures


class RealtimeError(RestaurantError):
    """Base exception for realtime connection failures."""

    reason = "realtime_error"
    status_code = 503


class NetworkError(RealtimeError):
    """Raised when a message cannot be written to the connection."""

    reason = "network_error"
    default_message = "Network error - please try again"


class ConnectionLostError(RealtimeError):
    """Raised by transports when the connection closes."""

    reason = "connection_lost"
    default_message = "Connection lost"

    def __init__(self, message: Optional[str] = None, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
