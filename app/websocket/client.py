"""
Reconnecting realtime client.

The client walks an explicit state machine::

    disconnected -> connecting -> connected -> reconnecting -> connecting ...

On every successful connection it authenticates and re-subscribes to the
channels it held before the drop. Events published while it was away are
not replayed; reconnect hooks let callers re-fetch authoritative state.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set
from uuid import UUID

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from app.config import get_settings
from app.errors import ConnectionLostError, NetworkError
from app.schemas.realtime import (
    AuthMessage,
    AuthPayload,
    PingMessage,
    ServerMessage,
    ServerMessageType,
    SubscribeMessage,
    UnsubscribeMessage,
    WireMessage,
)

LOGGER = logging.getLogger("realtime-client")

NORMAL_CLOSURE = 1000
ABNORMAL_CLOSURE = 1006
HEARTBEAT_TIMEOUT_CLOSE = 4000


class Transport(Protocol):
    async def send(self, text: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self, code: int = NORMAL_CLOSURE) -> None: ...


Connector = Callable[[], Awaitable[Transport]]
MessageHandler = Callable[[ServerMessage], Any]
ReconnectHook = Callable[[], Any]


class WebSocketsTransport:
    """Transport over a ``websockets`` client connection."""

    def __init__(self, connection: Any) -> None:
        self._connection = connection

    @classmethod
    async def connect(cls, url: str) -> "WebSocketsTransport":
        return cls(await websockets.connect(url))

    @classmethod
    def connector(cls, url: str) -> Connector:
        async def _connect() -> Transport:
            return await cls.connect(url)

        return _connect

    async def send(self, text: str) -> None:
        try:
            await self._connection.send(text)
        except ConnectionClosed as exc:
            raise ConnectionLostError(str(exc), code=_close_code(exc))

    async def recv(self) -> str:
        try:
            message = await self._connection.recv()
        except ConnectionClosed as exc:
            raise ConnectionLostError(str(exc), code=_close_code(exc))
        if isinstance(message, bytes):
            return message.decode("utf-8")
        return message

    async def close(self, code: int = NORMAL_CLOSURE) -> None:
        await self._connection.close(code=code)


def _close_code(exc: ConnectionClosed) -> int:
    # No close frame received means the connection dropped
    if exc.rcvd is None:
        return ABNORMAL_CLOSURE
    return exc.rcvd.code


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class RealtimeClient:
    """Channel subscriber with bounded reconnect and heartbeat."""

    def __init__(
        self,
        connector: Connector,
        user_id: UUID,
        token: Optional[str] = None,
        *,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
        backoff: Optional[float] = None,
        max_interval: Optional[float] = None,
        ping_interval: Optional[float] = None,
        pong_timeout: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self._connector = connector
        self.user_id = user_id
        self.token = token

        self.max_attempts = settings.ws_reconnect_attempts if max_attempts is None else max_attempts
        self.interval = settings.ws_reconnect_interval if interval is None else interval
        self.backoff = settings.ws_reconnect_backoff if backoff is None else backoff
        self.max_interval = settings.ws_reconnect_max_interval if max_interval is None else max_interval
        self.ping_interval = settings.ws_heartbeat_seconds if ping_interval is None else ping_interval
        self.pong_timeout = settings.ws_pong_timeout if pong_timeout is None else pong_timeout

        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.attempts = 0
        self.connections = 0
        self.channels: Set[str] = set()

        self._transport: Optional[Transport] = None
        self._runner: Optional[asyncio.Task] = None
        self._stopping = False
        self._heartbeat_failed = False
        self._authenticated = asyncio.Event()
        self._pong = asyncio.Event()
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._reconnect_hooks: List[ReconnectHook] = []
        self._state_listeners: List[Callable[[ConnectionState], Any]] = []

    # Public API

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated.is_set()

    def on(self, message_type: str, handler: MessageHandler) -> None:
        """Register a handler for a server message type, or ``"*"`` for all."""
        self._handlers.setdefault(message_type, []).append(handler)

    def on_reconnect(self, hook: ReconnectHook) -> None:
        """Run ``hook`` after every re-authentication that follows a drop."""
        self._reconnect_hooks.append(hook)

    def on_state_change(self, listener: Callable[[ConnectionState], Any]) -> None:
        self._state_listeners.append(listener)

    async def start(self) -> None:
        if self._runner is not None and not self._runner.done():
            return
        self._stopping = False
        self.attempts = 0
        self.last_error = None
        self._runner = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Close with a normal closure; no reconnect follows."""
        self._stopping = True
        transport = self._transport
        if transport is not None:
            try:
                await transport.close(NORMAL_CLOSURE)
            except (ConnectionLostError, OSError) as exc:
                LOGGER.debug("Close during stop failed: %s", exc)

        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None

        self._transport = None
        self._authenticated.clear()
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait_authenticated(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._authenticated.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_closed(self) -> None:
        if self._runner is not None:
            await asyncio.shield(self._runner)

    async def subscribe(self, channel: str) -> None:
        self.channels.add(channel)
        if self.is_authenticated:
            await self.send(SubscribeMessage(channel=channel))

    async def unsubscribe(self, channel: str) -> None:
        self.channels.discard(channel)
        if self.is_authenticated:
            await self.send(UnsubscribeMessage(channel=channel))

    async def send(self, message: WireMessage) -> bool:
        """
        Write one frame.

        Returns False (and logs) when not connected.

        Raises:
            NetworkError: The write failed on an open connection
        """
        transport = self._transport
        if transport is None or self.state != ConnectionState.CONNECTED:
            LOGGER.warning("WebSocket not connected, cannot send %s", getattr(message, "type", message))
            return False

        try:
            await transport.send(json.dumps(message.to_wire()))
        except (ConnectionLostError, OSError) as exc:
            raise NetworkError() from exc
        return True

    # Connection loop

    async def _run(self) -> None:
        try:
            while not self._stopping:
                self._set_state(
                    ConnectionState.RECONNECTING if self.attempts else ConnectionState.CONNECTING
                )
                close_code = await self._connect_once()

                if self._stopping or close_code == NORMAL_CLOSURE:
                    break

                self.attempts += 1
                if self.attempts > self.max_attempts:
                    self.last_error = "Max reconnection attempts reached"
                    LOGGER.error("%s (%d)", self.last_error, self.max_attempts)
                    break

                delay = self._retry_delay(self.attempts)
                LOGGER.info(
                    "Reconnecting in %.2fs (attempt %d/%d)",
                    delay,
                    self.attempts,
                    self.max_attempts,
                )
                self._set_state(ConnectionState.RECONNECTING)
                await asyncio.sleep(delay)
        finally:
            self._transport = None
            self._authenticated.clear()
            self._set_state(ConnectionState.DISCONNECTED)

    async def _connect_once(self) -> int:
        try:
            transport = await self._connector()
        except (ConnectionLostError, OSError, asyncio.TimeoutError, InvalidHandshake) as exc:
            self.last_error = str(exc) or exc.__class__.__name__
            LOGGER.warning("WebSocket connection failed: %s", self.last_error)
            return ABNORMAL_CLOSURE

        self._transport = transport
        self.attempts = 0
        self.connections += 1
        self._heartbeat_failed = False
        self._set_state(ConnectionState.CONNECTED)
        LOGGER.info("WebSocket connected")

        code = await self._session(transport)

        self._transport = None
        self._authenticated.clear()
        if self._heartbeat_failed:
            code = ABNORMAL_CLOSURE
        LOGGER.info("WebSocket disconnected: %s", code)
        return code

    async def _session(self, transport: Transport) -> int:
        pinger = asyncio.create_task(self._ping_loop(transport))
        try:
            await self.send(AuthMessage(payload=AuthPayload(user_id=self.user_id, token=self.token)))
            while True:
                raw = await transport.recv()
                await self._dispatch(raw)
        except ConnectionLostError as exc:
            return exc.code or ABNORMAL_CLOSURE
        except NetworkError as exc:
            self.last_error = exc.message
            return ABNORMAL_CLOSURE
        finally:
            pinger.cancel()
            try:
                await pinger
            except asyncio.CancelledError:
                pass

    async def _ping_loop(self, transport: Transport) -> None:
        while True:
            await asyncio.sleep(self.ping_interval)
            self._pong.clear()
            try:
                await self.send(PingMessage())
            except NetworkError:
                return

            try:
                await asyncio.wait_for(self._pong.wait(), self.pong_timeout)
            except asyncio.TimeoutError:
                self._heartbeat_failed = True
                self.last_error = "Heartbeat timeout"
                LOGGER.warning("No pong within %.1fs, closing connection", self.pong_timeout)
                try:
                    await transport.close(HEARTBEAT_TIMEOUT_CLOSE)
                except (ConnectionLostError, OSError) as exc:
                    LOGGER.debug("Close after heartbeat timeout failed: %s", exc)
                return

    def _retry_delay(self, attempt: int) -> float:
        return min(self.interval * (self.backoff ** (attempt - 1)), self.max_interval)

    # Inbound messages

    async def _dispatch(self, raw: str) -> None:
        try:
            message = ServerMessage.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            LOGGER.warning("Dropping unrecognized server message: %s", exc)
            return

        if message.type == ServerMessageType.AUTHENTICATED:
            await self._on_authenticated()
        elif message.type == ServerMessageType.PONG:
            self._pong.set()
        elif message.type == ServerMessageType.ERROR:
            detail = message.payload.get("message") if isinstance(message.payload, dict) else message.payload
            self.last_error = str(detail)
            LOGGER.warning("Server error: %s", detail)

        for handler in self._handlers.get(message.type.value, []) + self._handlers.get("*", []):
            await self._invoke(handler, message)

    async def _on_authenticated(self) -> None:
        self._authenticated.set()
        for channel in sorted(self.channels):
            await self.send(SubscribeMessage(channel=channel))

        if self.connections > 1:
            for hook in self._reconnect_hooks:
                await self._invoke(hook)

    async def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.exception("Realtime callback %r failed", callback)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        self.state = state
        for listener in self._state_listeners:
            try:
                listener(state)
            except Exception:
                LOGGER.exception("State listener %r failed", listener)
