"""
SMS notifications for waitlist customers.

Messages go out through Twilio's REST API. Without credentials every send is
skipped. A failed send is logged and reported as False; queue operations
never depend on delivery.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Messages.json"
DEFAULT_TIMEOUT = 10.0


class SmsNotifier:
    """Sends waitlist texts (joined, moved up, table ready)."""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.account_sid = account_sid or settings.twilio_account_sid
        self.auth_token = auth_token or settings.twilio_auth_token
        self.from_number = from_number or settings.twilio_from_number
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def send(self, to: Optional[str], body: str) -> bool:
        """
        Send one text message.

        Returns:
            True if Twilio accepted the message
        """
        if not to:
            logger.debug("No phone number, skipping SMS")
            return False
        if not self.is_configured:
            logger.debug("SMS not configured, skipping notification")
            return False

        url = TWILIO_MESSAGES_URL.format(account_sid=self.account_sid)
        try:
            async with httpx.AsyncClient(
                timeout=DEFAULT_TIMEOUT, transport=self._transport
            ) as client:
                response = await client.post(
                    url,
                    auth=(self.account_sid, self.auth_token),
                    data={"To": to, "From": self.from_number, "Body": body},
                )
        except httpx.HTTPError as e:
            logger.error("SMS request failed: %s", e)
            return False

        if response.status_code not in (200, 201):
            logger.error("Twilio rejected SMS: %d - %s", response.status_code, response.text)
            return False

        logger.info("SMS sent via Twilio (%d)", response.status_code)
        return True

    async def send_waitlist_joined(
        self,
        to: str,
        customer_name: str,
        restaurant_name: str,
        position: int,
        wait_minutes: int,
    ) -> bool:
        return await self.send(
            to,
            f"Hi {customer_name}! You're #{position} on the waitlist at {restaurant_name}. "
            f"Estimated wait time: {wait_minutes} minutes. "
            "We'll text you when your table is ready!",
        )

    async def send_position_update(
        self,
        to: str,
        customer_name: str,
        restaurant_name: str,
        position: int,
        wait_minutes: int,
    ) -> bool:
        return await self.send(
            to,
            f"Update from {restaurant_name}: You're now #{position} on the waitlist, "
            f"{customer_name}. Estimated wait time: {wait_minutes} minutes.",
        )

    async def send_table_ready(
        self,
        to: str,
        customer_name: str,
        restaurant_name: str,
        grace_minutes: int,
    ) -> bool:
        return await self.send(
            to,
            f"{customer_name}, your table is ready at {restaurant_name}! "
            f"Please come to the host stand within {grace_minutes} minutes to be seated.",
        )
