"""
Wire schema for the realtime channel.

Every frame is ``{type, payload, channel?, timestamp}``. Inbound frames are a
tagged union on ``type``; anything outside it fails validation and is
rejected by the broker.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter

from app.schemas.base import ApiRequest

SYSTEM_CHANNEL = "system"


class WireMessage(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# Client -> server


class AuthPayload(ApiRequest):
    user_id: UUID
    token: Optional[str] = None


class AuthMessage(WireMessage):
    type: Literal["auth"] = "auth"
    payload: AuthPayload
    channel: Optional[str] = None


class SubscribeMessage(WireMessage):
    type: Literal["subscribe"] = "subscribe"
    channel: str = Field(..., min_length=1, max_length=200)
    payload: Any = None


class UnsubscribeMessage(WireMessage):
    type: Literal["unsubscribe"] = "unsubscribe"
    channel: str = Field(..., min_length=1, max_length=200)
    payload: Any = None


class PingMessage(WireMessage):
    type: Literal["ping"] = "ping"
    payload: Any = None
    channel: Optional[str] = None


ClientMessage = Annotated[
    Union[AuthMessage, SubscribeMessage, UnsubscribeMessage, PingMessage],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


# Server -> client


class ServerMessageType(str, Enum):
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    PONG = "pong"
    ERROR = "error"
    QUEUE_UPDATED = "queue_updated"
    ORDER_UPDATED = "order_updated"
    RESERVATION_UPDATED = "reservation_updated"
    LOYALTY_UPDATED = "loyalty_updated"
    PROMOTION_UPDATED = "promotion_updated"
    MENU_UPDATED = "menu_updated"


class ServerMessage(WireMessage):
    type: ServerMessageType
    payload: Any = None
    channel: str = SYSTEM_CHANNEL


# Channel names


def user_channel(user_id: Any, topic: str) -> str:
    return f"user:{user_id}:{topic}"


def restaurant_channel(restaurant_id: Any, topic: str) -> str:
    return f"restaurant:{restaurant_id}:{topic}"
