"""Signed redemption codes carried in customer QR codes."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID, uuid4

import jwt
from pydantic import BaseModel, ValidationError

from app.config import get_settings
from app.errors import ExpiredError, InvalidCodeError
from app.schemas.redemption import RedemptionClaims

logger = logging.getLogger(__name__)


@dataclass
class IssuedCode:
    value: str
    token: str
    expires_at: datetime


class QrCodeCodec:
    """
    Issues and verifies redemption codes.

    A code is a signed JWT whose claims are:
    - sub: customer the code belongs to
    - jti: single-use token, consumed on redemption
    - exp / iat: lifetime
    - rid: optional restaurant scope
    - code: type-specific payload (reward, discount, deal or tier benefit)
    """

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        settings = get_settings()
        self.secret = secret or settings.qr_signing_secret
        self.algorithm = algorithm or settings.qr_algorithm

    def issue(
        self,
        user_id: UUID,
        payload: BaseModel,
        expires_in: timedelta,
        restaurant_id: Optional[UUID] = None,
    ) -> IssuedCode:
        now = datetime.now(timezone.utc)
        expires_at = now + expires_in
        token = uuid4().hex

        claims = {
            "sub": str(user_id),
            "jti": token,
            "iat": now,
            "exp": expires_at,
            "code": payload.model_dump(mode="json"),
        }
        if restaurant_id is not None:
            claims["rid"] = str(restaurant_id)

        value = jwt.encode(claims, self.secret, algorithm=self.algorithm)
        return IssuedCode(value=value, token=token, expires_at=expires_at)

    def decode(self, value: str) -> RedemptionClaims:
        """
        Verify signature and expiry and parse the claims.

        Raises:
            ExpiredError: The code's lifetime has passed
            InvalidCodeError: Bad signature, malformed token or payload
        """
        try:
            raw = jwt.decode(
                value.strip(),
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "jti", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise ExpiredError()
        except jwt.InvalidTokenError as e:
            logger.info("Rejected QR code: %s", e)
            raise InvalidCodeError()

        try:
            return RedemptionClaims.model_validate(raw)
        except ValidationError as e:
            logger.info("Rejected QR code payload: %s", e.errors())
            raise InvalidCodeError()
