"""
Realtime channel broker.

Connections authenticate, subscribe to named channels and receive every event
published to those channels after they subscribed. Delivery is best-effort
and at most once; nothing is buffered for disconnected clients.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set
from uuid import UUID, uuid4

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.config import get_settings
from app.schemas.realtime import (
    AuthMessage,
    PingMessage,
    ServerMessage,
    ServerMessageType,
    SubscribeMessage,
    UnsubscribeMessage,
    client_message_adapter,
    restaurant_channel,
    user_channel,
)

LOGGER = logging.getLogger("realtime-broker")

CLIENT_MESSAGE_TYPES = {"auth", "subscribe", "unsubscribe", "ping"}


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


@dataclass
class Principal:
    """Identity bound to a connection after ``auth``."""

    user_id: UUID
    role: str
    restaurant_id: Optional[UUID] = None


Authenticator = Callable[[UUID, Optional[str]], Awaitable[Optional[Principal]]]


async def authenticate_user(user_id: UUID, token: Optional[str]) -> Optional[Principal]:
    """Resolve a connecting user from the database; credentials are not checked here."""
    from app.database import get_session_context
    from app.models.user import User

    async with get_session_context() as session:
        user = await session.get(User, user_id)
        if user is None:
            return None
        return Principal(user_id=user.id, role=user.role, restaurant_id=user.restaurant_id)


@dataclass(eq=False)
class ClientSession:
    """Broker-side state of one live connection."""

    connection: Any
    id: str = field(default_factory=lambda: uuid4().hex)
    principal: Optional[Principal] = None
    channels: Set[str] = field(default_factory=set)
    last_seen: float = field(default_factory=time.monotonic)

    @property
    def is_authenticated(self) -> bool:
        return self.principal is not None


class ChannelBroker:
    """Per-connection channel subscriptions and event fan-out."""

    def __init__(self, authenticator: Optional[Authenticator] = None) -> None:
        self._authenticator = authenticator or authenticate_user
        self._sessions: Set[ClientSession] = set()
        self._channels: Dict[str, Set[ClientSession]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, connection: Connection) -> ClientSession:
        session = ClientSession(connection=connection)
        async with self._lock:
            self._sessions.add(session)

        LOGGER.info("Realtime connection opened: %s", session.id)
        await self._send(
            session,
            ServerMessage(
                type=ServerMessageType.CONNECTED,
                payload={"message": "WebSocket connection established"},
            ),
        )
        return session

    async def disconnect(self, session: ClientSession) -> None:
        async with self._lock:
            if session not in self._sessions:
                return
            self._sessions.discard(session)
            for channel in list(session.channels):
                subscribers = self._channels.get(channel)
                if subscribers is None:
                    continue
                subscribers.discard(session)
                if not subscribers:
                    del self._channels[channel]
            session.channels.clear()

        user = session.principal.user_id if session.principal else "unknown"
        LOGGER.info("Realtime connection closed: %s (user %s)", session.id, user)

    async def handle_raw(self, session: ClientSession, raw: str) -> None:
        """Parse and dispatch one inbound frame; bad frames never close the connection."""
        session.last_seen = time.monotonic()

        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            LOGGER.warning("Dropping malformed frame from %s", session.id)
            await self._send_error(session, "Invalid message format")
            return

        try:
            message = client_message_adapter.validate_python(data)
        except ValidationError as exc:
            message_type = data.get("type") if isinstance(data, dict) else None
            if message_type not in CLIENT_MESSAGE_TYPES:
                LOGGER.warning("Unknown message type from %s: %r", session.id, message_type)
                await self._send_error(session, f"Unknown message type: {message_type}")
            else:
                LOGGER.warning(
                    "Invalid %s message from %s: %s", message_type, session.id, exc.errors()
                )
                await self._send_error(session, "Invalid message format")
            return

        if isinstance(message, AuthMessage):
            await self._handle_auth(session, message)
        elif isinstance(message, SubscribeMessage):
            await self.subscribe(session, message.channel)
        elif isinstance(message, UnsubscribeMessage):
            await self.unsubscribe(session, message.channel)
        elif isinstance(message, PingMessage):
            await self._send(
                session, ServerMessage(type=ServerMessageType.PONG, payload=message.payload)
            )

    async def handle_bytes(self, session: ClientSession, data: bytes) -> None:
        """Binary frames are accepted when they hold UTF-8 JSON."""
        try:
            raw = data.decode("utf-8")
        except UnicodeDecodeError:
            session.last_seen = time.monotonic()
            LOGGER.warning("Dropping undecodable binary frame from %s", session.id)
            await self._send_error(session, "Invalid message format")
            return
        await self.handle_raw(session, raw)

    async def _handle_auth(self, session: ClientSession, message: AuthMessage) -> None:
        try:
            principal = await self._authenticator(message.payload.user_id, message.payload.token)
        except Exception as exc:
            LOGGER.error("Authentication error for %s: %s", message.payload.user_id, exc)
            await self._send_error(session, "Authentication failed")
            return

        if principal is None:
            await self._send_error(session, "Invalid user credentials")
            return

        previous = session.principal
        session.principal = principal
        LOGGER.info("Realtime authenticated: user %s (%s)", principal.user_id, principal.role)
        if previous is not None and previous != principal:
            await self._drop_unauthorized(session)
        await self._send(
            session,
            ServerMessage(
                type=ServerMessageType.AUTHENTICATED,
                payload={
                    "user_id": str(principal.user_id),
                    "role": principal.role,
                    "restaurant_id": str(principal.restaurant_id) if principal.restaurant_id else None,
                },
            ),
        )

    async def subscribe(self, session: ClientSession, channel: str) -> bool:
        if not self.is_authorized(session.principal, channel):
            await self._send_error(session, f"Not authorized for channel: {channel}")
            return False

        async with self._lock:
            if session not in self._sessions:
                return False
            self._channels.setdefault(channel, set()).add(session)
            session.channels.add(channel)

        LOGGER.debug("Session %s subscribed to %s", session.id, channel)
        await self._send(
            session,
            ServerMessage(type=ServerMessageType.SUBSCRIBED, payload={"channel": channel}),
        )
        return True

    async def unsubscribe(self, session: ClientSession, channel: str) -> None:
        async with self._lock:
            subscribers = self._channels.get(channel)
            if subscribers is not None:
                subscribers.discard(session)
                if not subscribers:
                    del self._channels[channel]
            session.channels.discard(channel)

        await self._send(
            session,
            ServerMessage(type=ServerMessageType.UNSUBSCRIBED, payload={"channel": channel}),
        )

    async def _drop_unauthorized(self, session: ClientSession) -> None:
        """Unsubscribe channels the session's current principal may not read."""
        async with self._lock:
            revoked = [
                channel
                for channel in session.channels
                if not self.is_authorized(session.principal, channel)
            ]
            for channel in revoked:
                subscribers = self._channels.get(channel)
                if subscribers is not None:
                    subscribers.discard(session)
                    if not subscribers:
                        del self._channels[channel]
                session.channels.discard(channel)

        for channel in revoked:
            LOGGER.info("Session %s lost access to %s after re-auth", session.id, channel)
            await self._send(
                session,
                ServerMessage(type=ServerMessageType.UNSUBSCRIBED, payload={"channel": channel}),
            )

    @staticmethod
    def is_authorized(principal: Optional[Principal], channel: str) -> bool:
        """Channel access rules for an authenticated principal."""
        if principal is None:
            return False

        if channel.startswith("system"):
            return True
        if channel.startswith(f"user:{principal.user_id}"):
            return True
        if principal.restaurant_id is not None and channel.startswith(
            f"restaurant:{principal.restaurant_id}"
        ):
            return True
        if principal.role in ("owner", "admin") and channel.startswith(
            ("orders", "queue", "analytics")
        ):
            return True
        if principal.role == "customer" and channel.startswith("customer"):
            return True
        return False

    async def publish(
        self,
        channel: str,
        message_type: ServerMessageType,
        payload: Any,
    ) -> int:
        """Send an event to every current subscriber of ``channel``; returns deliveries."""
        async with self._lock:
            subscribers = list(self._channels.get(channel, ()))

        if not subscribers:
            return 0

        message = ServerMessage(type=message_type, payload=payload, channel=channel)
        delivered = 0
        for session in subscribers:
            if await self._send(session, message):
                delivered += 1

        LOGGER.debug("Broadcast to %s: %s (%d clients)", channel, message_type.value, delivered)
        return delivered

    # Feature events

    async def notify_queue_update(self, entry: Dict[str, Any]) -> None:
        payload = {"queue_entry": entry}
        await self.publish(
            restaurant_channel(entry["restaurant_id"], "queue"),
            ServerMessageType.QUEUE_UPDATED,
            payload,
        )
        await self.publish(
            user_channel(entry["user_id"], "queue"),
            ServerMessageType.QUEUE_UPDATED,
            payload,
        )

    async def notify_loyalty_update(self, user_id: UUID, payload: Dict[str, Any]) -> None:
        await self.publish(
            user_channel(user_id, "loyalty"), ServerMessageType.LOYALTY_UPDATED, payload
        )

    async def notify_promotion_update(self, restaurant_id: UUID, payload: Dict[str, Any]) -> None:
        await self.publish(
            restaurant_channel(restaurant_id, "promotions"),
            ServerMessageType.PROMOTION_UPDATED,
            payload,
        )

    # Liveness

    def is_idle(self, session: ClientSession, timeout: float) -> bool:
        return time.monotonic() - session.last_seen > timeout

    async def close_idle(self, timeout: float) -> int:
        """Close and drop sessions with no inbound traffic for ``timeout`` seconds."""
        async with self._lock:
            stale = [s for s in self._sessions if self.is_idle(s, timeout)]

        for session in stale:
            LOGGER.info("Closing idle realtime connection %s", session.id)
            await self.disconnect(session)
            try:
                await session.connection.close(code=1001)
            except Exception as exc:
                LOGGER.debug("Close of idle connection %s failed: %s", session.id, exc)
        return len(stale)

    def stats(self) -> Dict[str, Any]:
        return {
            "total_clients": len(self._sessions),
            "total_channels": len(self._channels),
            "channels": {
                channel: len(subscribers) for channel, subscribers in self._channels.items()
            },
        }

    async def _send(self, session: ClientSession, message: ServerMessage) -> bool:
        try:
            await session.connection.send_json(message.to_wire())
            return True
        except Exception as exc:
            LOGGER.warning("Send to %s failed, dropping connection: %s", session.id, exc)
            await self.disconnect(session)
            return False

    async def _send_error(self, session: ClientSession, message: str) -> None:
        await self._send(
            session, ServerMessage(type=ServerMessageType.ERROR, payload={"message": message})
        )


channel_broker = ChannelBroker()


def get_broker() -> ChannelBroker:
    """Dependency for FastAPI routes to reach the process-wide broker."""
    return channel_broker


def register_realtime_websocket(app: FastAPI, broker: ChannelBroker = channel_broker) -> None:
    """Register the /ws realtime endpoint."""

    @app.websocket("/ws")
    async def realtime_websocket(websocket: WebSocket) -> None:
        await websocket.accept()
        session = await broker.connect(websocket)
        heartbeat = get_settings().ws_heartbeat_seconds
        try:
            while True:
                try:
                    message = await asyncio.wait_for(websocket.receive(), timeout=heartbeat)
                except asyncio.TimeoutError:
                    # Clients ping every heartbeat; two silent intervals means it is gone
                    if broker.is_idle(session, heartbeat * 2):
                        LOGGER.info("Closing idle realtime connection %s", session.id)
                        await websocket.close(code=1001)
                        break
                    continue

                if message["type"] == "websocket.disconnect":
                    break
                if message.get("text") is not None:
                    await broker.handle_raw(session, message["text"])
                elif message.get("bytes") is not None:
                    await broker.handle_bytes(session, message["bytes"])
        except WebSocketDisconnect:
            pass
        except Exception:
            LOGGER.exception("Realtime connection %s failed", session.id)
        finally:
            await broker.disconnect(session)
