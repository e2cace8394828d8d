"""Tests for ChannelBroker and the /ws endpoint."""
from __future__ import annotations

import json
import time
from uuid import uuid4

import pytest
from fastapi import FastAPI, WebSocketDisconnect
from fastapi.testclient import TestClient

from app.config import get_settings
from app.schemas.realtime import ServerMessageType
from app.websocket.channels import ChannelBroker, Principal, register_realtime_websocket


def frame(message_type, **fields):
    return json.dumps({"type": message_type, **fields})


async def authenticate(broker, link, user_id):
    await broker.handle_raw(link.session, frame("auth", payload={"userId": str(user_id)}))


class TestConnect:
    async def test_greets_new_connection(self, broker, new_link, drain_link):
        link = await new_link()

        frames = await drain_link(link)

        assert frames[0]["type"] == "connected"
        assert frames[0]["channel"] == "system"
        assert frames[0]["payload"] == {"message": "WebSocket connection established"}
        assert "timestamp" in frames[0]
        assert broker.stats()["total_clients"] == 1

    async def test_disconnect_drops_subscriptions(self, broker, new_link, sample_ids):
        _, owner_id, _ = sample_ids
        link = await new_link()
        await authenticate(broker, link, owner_id)
        await broker.subscribe(link.session, "system:announcements")

        await broker.disconnect(link.session)

        assert broker.stats() == {"total_clients": 0, "total_channels": 0, "channels": {}}


class TestAuth:
    async def test_known_user(self, broker, new_link, drain_link, sample_ids):
        restaurant_id, owner_id, _ = sample_ids
        link = await new_link()
        await drain_link(link)

        await authenticate(broker, link, owner_id)

        (reply,) = await drain_link(link)
        assert reply["type"] == "authenticated"
        assert reply["payload"] == {
            "user_id": str(owner_id),
            "role": "owner",
            "restaurant_id": str(restaurant_id),
        }
        assert link.session.is_authenticated

    async def test_unknown_user(self, broker, new_link, drain_link):
        link = await new_link()
        await drain_link(link)

        await authenticate(broker, link, uuid4())

        (reply,) = await drain_link(link)
        assert reply["type"] == "error"
        assert reply["payload"]["message"] == "Invalid user credentials"
        assert not link.session.is_authenticated

    async def test_authenticator_failure(self, new_link, drain_link):
        async def broken(user_id, token):
            raise RuntimeError("database unavailable")

        broker = ChannelBroker(authenticator=broken)
        link = await new_link(broker)
        await drain_link(link)

        await authenticate(broker, link, uuid4())

        (reply,) = await drain_link(link)
        assert reply["payload"]["message"] == "Authentication failed"
        assert broker.stats()["total_clients"] == 1


class TestAuthorization:
    owner = Principal(user_id=uuid4(), role="owner", restaurant_id=uuid4())
    customer = Principal(user_id=uuid4(), role="customer")
    server = Principal(user_id=uuid4(), role="staff", restaurant_id=uuid4())

    @pytest.mark.parametrize(
        "principal,channel,allowed",
        [
            (None, "system", False),
            (customer, "system", True),
            (customer, f"user:{customer.user_id}:loyalty", True),
            (customer, f"user:{owner.user_id}:loyalty", False),
            (customer, "customer:promotions", True),
            (customer, "queue:all", False),
            (customer, f"restaurant:{owner.restaurant_id}:queue", False),
            (owner, f"restaurant:{owner.restaurant_id}:queue", True),
            (owner, f"restaurant:{server.restaurant_id}:queue", False),
            (owner, "orders:kitchen", True),
            (owner, "analytics", True),
            (owner, "customer:promotions", False),
            (server, f"restaurant:{server.restaurant_id}:promotions", True),
            (server, "orders:kitchen", False),
        ],
    )
    def test_rules(self, principal, channel, allowed):
        assert ChannelBroker.is_authorized(principal, channel) is allowed

    async def test_denied_subscription_reports_error(self, broker, new_link, drain_link, sample_ids):
        _, _, customer_id = sample_ids
        link = await new_link()
        await authenticate(broker, link, customer_id)
        await drain_link(link)

        await broker.handle_raw(link.session, frame("subscribe", channel="orders:kitchen"))

        (reply,) = await drain_link(link)
        assert reply["type"] == "error"
        assert reply["payload"]["message"] == "Not authorized for channel: orders:kitchen"
        assert broker.stats()["total_channels"] == 0

    async def test_unauthenticated_cannot_subscribe(self, broker, new_link, drain_link):
        link = await new_link()
        await drain_link(link)

        await broker.handle_raw(link.session, frame("subscribe", channel="system"))

        (reply,) = await drain_link(link)
        assert reply["type"] == "error"


class TestPublish:
    async def test_delivers_once_to_each_subscriber(self, broker, new_link, drain_link, sample_ids):
        restaurant_id, owner_id, _ = sample_ids
        channel = f"restaurant:{restaurant_id}:queue"
        links = [await new_link() for _ in range(3)]
        for link in links[:2]:
            await authenticate(broker, link, owner_id)
            await broker.handle_raw(link.session, frame("subscribe", channel=channel))
        for link in links:
            await drain_link(link)

        delivered = await broker.publish(channel, ServerMessageType.QUEUE_UPDATED, {"n": 1})

        assert delivered == 2
        for link in links[:2]:
            (event,) = await drain_link(link)
            assert event["type"] == "queue_updated"
            assert event["channel"] == channel
            assert event["payload"] == {"n": 1}
        assert await drain_link(links[2]) == []

    async def test_subscribe_is_idempotent(self, broker, new_link, drain_link, sample_ids):
        _, owner_id, _ = sample_ids
        link = await new_link()
        await authenticate(broker, link, owner_id)
        await broker.subscribe(link.session, "system")
        await broker.subscribe(link.session, "system")
        await drain_link(link)

        assert await broker.publish("system", ServerMessageType.MENU_UPDATED, {}) == 1
        assert len(await drain_link(link)) == 1

    async def test_unsubscribe_stops_delivery(self, broker, new_link, drain_link, sample_ids):
        _, owner_id, _ = sample_ids
        link = await new_link()
        await authenticate(broker, link, owner_id)
        await broker.handle_raw(link.session, frame("subscribe", channel="analytics"))
        await broker.handle_raw(link.session, frame("unsubscribe", channel="analytics"))
        frames = await drain_link(link)

        assert frames[-1]["type"] == "unsubscribed"
        assert frames[-1]["payload"] == {"channel": "analytics"}
        assert await broker.publish("analytics", ServerMessageType.ORDER_UPDATED, {}) == 0

    async def test_failed_send_drops_subscriber(self, broker, new_link, sample_ids):
        _, owner_id, _ = sample_ids
        link = await new_link()
        await authenticate(broker, link, owner_id)
        await broker.subscribe(link.session, "system")
        link.closed = True

        assert await broker.publish("system", ServerMessageType.MENU_UPDATED, {}) == 0
        assert broker.stats()["total_clients"] == 0
        assert broker.stats()["total_channels"] == 0

    async def test_queue_update_reaches_restaurant_and_customer(
        self, broker, new_link, drain_link, sample_ids
    ):
        restaurant_id, owner_id, customer_id = sample_ids
        staff_link, customer_link = await new_link(), await new_link()
        await authenticate(broker, staff_link, owner_id)
        await broker.subscribe(staff_link.session, f"restaurant:{restaurant_id}:queue")
        await authenticate(broker, customer_link, customer_id)
        await broker.subscribe(customer_link.session, f"user:{customer_id}:queue")
        await drain_link(staff_link)
        await drain_link(customer_link)

        entry = {"id": str(uuid4()), "restaurant_id": str(restaurant_id), "user_id": str(customer_id)}
        await broker.notify_queue_update(entry)

        (staff_event,) = await drain_link(staff_link)
        (customer_event,) = await drain_link(customer_link)
        assert staff_event["payload"] == {"queue_entry": entry}
        assert customer_event["channel"] == f"user:{customer_id}:queue"


class TestInboundFrames:
    async def test_ping_echoes_payload(self, broker, new_link, drain_link):
        link = await new_link()
        await drain_link(link)

        await broker.handle_raw(link.session, frame("ping", payload={"seq": 7}))

        (reply,) = await drain_link(link)
        assert reply["type"] == "pong"
        assert reply["payload"] == {"seq": 7}

    @pytest.mark.parametrize(
        "raw,message",
        [
            ("{not json", "Invalid message format"),
            (json.dumps(["auth"]), "Unknown message type: None"),
            (frame("shout", payload="hi"), "Unknown message type: shout"),
            (frame("subscribe"), "Invalid message format"),
            (frame("auth", payload={"userId": "nope"}), "Invalid message format"),
        ],
    )
    async def test_bad_frames_get_error_reply(self, broker, new_link, drain_link, raw, message):
        link = await new_link()
        await drain_link(link)

        await broker.handle_raw(link.session, raw)

        (reply,) = await drain_link(link)
        assert reply["type"] == "error"
        assert reply["payload"]["message"] == message
        assert not link.closed
        assert broker.stats()["total_clients"] == 1


class TestIdle:
    async def test_closes_silent_connections(self, broker, new_link):
        quiet, chatty = await new_link(), await new_link()
        quiet.session.last_seen = time.monotonic() - 120

        closed = await broker.close_idle(timeout=60)

        assert closed == 1
        assert quiet.closed
        assert not chatty.closed
        assert broker.stats()["total_clients"] == 1

    async def test_inbound_traffic_counts_as_activity(self, broker, new_link):
        link = await new_link()
        link.session.last_seen = time.monotonic() - 120

        await broker.handle_raw(link.session, frame("ping"))

        assert not broker.is_idle(link.session, 60)


class TestReauthentication:
    async def test_new_identity_loses_previous_channels(
        self, broker, new_link, drain_link, sample_ids
    ):
        restaurant_id, owner_id, customer_id = sample_ids
        queue_channel = f"restaurant:{restaurant_id}:queue"
        link = await new_link()
        await authenticate(broker, link, owner_id)
        await broker.subscribe(link.session, queue_channel)
        await broker.subscribe(link.session, "system:announcements")
        await drain_link(link)

        await authenticate(broker, link, customer_id)

        replies = await drain_link(link)
        assert [r["type"] for r in replies] == ["unsubscribed", "authenticated"]
        assert replies[0]["payload"] == {"channel": queue_channel}
        assert link.session.channels == {"system:announcements"}
        assert await broker.publish(queue_channel, ServerMessageType.QUEUE_UPDATED, {}) == 0

    async def test_same_identity_keeps_channels(self, broker, new_link, drain_link, sample_ids):
        restaurant_id, owner_id, _ = sample_ids
        link = await new_link()
        await authenticate(broker, link, owner_id)
        await broker.subscribe(link.session, f"restaurant:{restaurant_id}:queue")
        await drain_link(link)

        await authenticate(broker, link, owner_id)

        (reply,) = await drain_link(link)
        assert reply["type"] == "authenticated"
        assert link.session.channels == {f"restaurant:{restaurant_id}:queue"}


class TestBinaryFrames:
    async def test_undecodable_bytes_get_error_reply(self, broker, new_link, drain_link):
        link = await new_link()
        await drain_link(link)

        await broker.handle_bytes(link.session, b"\xff\xfe not text")

        (reply,) = await drain_link(link)
        assert reply["type"] == "error"
        assert reply["payload"]["message"] == "Invalid message format"
        assert broker.stats()["total_clients"] == 1

    async def test_utf8_json_bytes_are_dispatched(self, broker, new_link, drain_link):
        link = await new_link()
        await drain_link(link)

        await broker.handle_bytes(link.session, frame("ping", payload={"seq": 3}).encode())

        (reply,) = await drain_link(link)
        assert reply["type"] == "pong"
        assert reply["payload"] == {"seq": 3}


@pytest.fixture
def ws_client(broker):
    app = FastAPI()
    register_realtime_websocket(app, broker)
    with TestClient(app) as client:
        yield client


class TestWebSocketEndpoint:
    def test_greets_on_connect(self, ws_client, broker):
        with ws_client.websocket_connect("/ws") as ws:
            greeting = ws.receive_json()

            assert greeting["type"] == "connected"
            assert greeting["channel"] == "system"
            assert broker.stats()["total_clients"] == 1

    def test_auth_subscribe_and_receive(self, ws_client, broker, sample_ids):
        restaurant_id, owner_id, _ = sample_ids
        channel = f"restaurant:{restaurant_id}:queue"

        with ws_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "auth", "payload": {"userId": str(owner_id)}})
            assert ws.receive_json()["type"] == "authenticated"
            ws.send_json({"type": "subscribe", "channel": channel})
            assert ws.receive_json()["payload"] == {"channel": channel}

            delivered = ws_client.portal.call(
                broker.publish, channel, ServerMessageType.QUEUE_UPDATED, {"position": 2}
            )
            event = ws.receive_json()

        assert delivered == 1
        assert event["type"] == "queue_updated"
        assert event["channel"] == channel
        assert event["payload"] == {"position": 2}

    def test_bad_frames_keep_connection_open(self, ws_client):
        with ws_client.websocket_connect("/ws") as ws:
            ws.receive_json()

            ws.send_bytes(b"\xff\xfe not text")
            assert ws.receive_json()["payload"]["message"] == "Invalid message format"
            ws.send_text("{not json")
            assert ws.receive_json()["type"] == "error"

            ws.send_bytes(frame("ping", payload={"seq": 1}).encode())
            assert ws.receive_json()["payload"] == {"seq": 1}
            ws.send_json({"type": "ping", "payload": {"seq": 2}})
            assert ws.receive_json()["payload"] == {"seq": 2}

    def test_client_disconnect_cleans_up(self, ws_client, broker, sample_ids):
        restaurant_id, owner_id, _ = sample_ids

        with ws_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "auth", "payload": {"userId": str(owner_id)}})
            ws.receive_json()
            ws.send_json({"type": "subscribe", "channel": f"restaurant:{restaurant_id}:queue"})
            ws.receive_json()
            assert broker.stats()["total_channels"] == 1

        assert broker.stats() == {"total_clients": 0, "total_channels": 0, "channels": {}}

    def test_silent_connection_is_closed(self, ws_client, broker, monkeypatch):
        monkeypatch.setattr(get_settings(), "ws_heartbeat_seconds", 0.05)

        with ws_client.websocket_connect("/ws") as ws:
            ws.receive_json()
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 1001
        assert broker.stats()["total_clients"] == 0
