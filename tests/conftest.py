"""
Pytest configuration and fixtures.

This module provides fixtures that simulate real-world restaurant scenarios:
- A restaurant with a 25 minute table turnover
- Staff (owner, server) and customers spread across loyalty tiers
- Loyalty rewards and a running lightning deal
- A realtime broker with in-memory client connections
- An SMS notifier talking to a mocked Twilio endpoint
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Callable, Dict, List, Optional, Set
from urllib.parse import parse_qs
from uuid import UUID, uuid4

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.database import Base, engine_options
from app.errors import ConnectionLostError
from app.models import LightningDeal, LoyaltyReward, Restaurant, User
from app.schemas.realtime import ServerMessageType
from app.services.qr_codes import QrCodeCodec
from app.services.sms_notifier import SmsNotifier
from app.websocket.channels import Authenticator, ChannelBroker, Principal


# Use SQLite for testing (in-memory)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_QR_SECRET = "test-qr-secret"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def file_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """
    Session factory over a file-backed SQLite database.

    Each session gets its own connection, so concurrent service calls
    really do race on the database.
    """
    url = f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}"
    engine = create_async_engine(url, poolclass=NullPool, **engine_options(url))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def sample_restaurant(db_session: AsyncSession) -> Restaurant:
    """
    Create "The Golden Fork" with a 25 minute turnover and a single
    table turning over at a time.
    """
    restaurant = Restaurant(
        id=uuid4(),
        name="The Golden Fork",
        timezone="America/New_York",
        config={"waitlist": {"average_table_turnover": 25, "concurrent_tables": 1}},
    )
    db_session.add(restaurant)
    await db_session.commit()
    await db_session.refresh(restaurant)
    return restaurant


@pytest_asyncio.fixture
async def sample_staff(
    db_session: AsyncSession, sample_restaurant: Restaurant
) -> Dict[str, User]:
    """Owner and server working at the sample restaurant."""
    staff = {
        "owner": User(
            id=uuid4(),
            name="Olivia",
            email="olivia@goldenfork.com",
            role="owner",
            restaurant_id=sample_restaurant.id,
        ),
        "staff": User(
            id=uuid4(),
            name="Sam",
            email="sam@goldenfork.com",
            role="staff",
            restaurant_id=sample_restaurant.id,
        ),
    }
    db_session.add_all(staff.values())
    await db_session.commit()
    return staff


@pytest_asyncio.fixture
async def sample_customers(db_session: AsyncSession) -> List[User]:
    """
    Customers across the tiers:
    - Casey: regular, 150 points
    - Vic: vip, 640 points
    - Pat: premium, 1200 points
    """
    customers = [
        User(id=uuid4(), name="Casey", email="casey@example.com", role="customer",
             loyalty_points=150, lifetime_points=320),
        User(id=uuid4(), name="Vic", email="vic@example.com", role="customer",
             loyalty_points=640, lifetime_points=780),
        User(id=uuid4(), name="Pat", email="pat@example.com", role="customer",
             loyalty_points=1200, lifetime_points=2150),
    ]
    db_session.add_all(customers)
    await db_session.commit()
    return customers


@pytest_asyncio.fixture
async def sample_rewards(
    db_session: AsyncSession, sample_restaurant: Restaurant
) -> List[LoyaltyReward]:
    """Coffee (100), appetizer (250), entree (500) and a retired reward."""
    rewards = [
        LoyaltyReward(id=uuid4(), restaurant_id=sample_restaurant.id, name="Free Coffee",
                      description="Any hot coffee drink", points_required=100),
        LoyaltyReward(id=uuid4(), restaurant_id=sample_restaurant.id, name="Free Appetizer",
                      description="Any appetizer", points_required=250),
        LoyaltyReward(id=uuid4(), restaurant_id=sample_restaurant.id, name="Free Entree",
                      description="Any entree up to $25", points_required=500),
        LoyaltyReward(id=uuid4(), restaurant_id=sample_restaurant.id, name="Old Promo",
                      description="Retired", points_required=50, is_active=False),
    ]
    db_session.add_all(rewards)
    await db_session.commit()
    return rewards


@pytest_asyncio.fixture
async def sample_deal(db_session: AsyncSession, sample_restaurant: Restaurant) -> LightningDeal:
    """Half-price wings, 3 available, running for the next two hours."""
    now = datetime.utcnow()
    deal = LightningDeal(
        id=uuid4(),
        restaurant_id=sample_restaurant.id,
        title="Half-Price Wings",
        description="A dozen wings",
        original_price=Decimal("16.00"),
        deal_price=Decimal("8.00"),
        total_available=3,
        claimed=0,
        start_time=now - timedelta(minutes=5),
        end_time=now + timedelta(hours=2),
    )
    db_session.add(deal)
    await db_session.commit()
    return deal


@pytest.fixture
def qr_codec() -> QrCodeCodec:
    return QrCodeCodec(secret=TEST_QR_SECRET, algorithm="HS256")


# SMS


@pytest.fixture
def sms_outbox() -> List[dict]:
    """Form bodies of every text sent through ``sms_notifier``."""
    return []


@pytest.fixture
def sms_notifier(sms_outbox) -> SmsNotifier:
    """Configured notifier whose Twilio calls land in ``sms_outbox``."""

    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        sms_outbox.append({key: values[0] for key, values in form.items()})
        return httpx.Response(201, json={"sid": "SM0001"})

    return SmsNotifier(
        account_sid="AC0001",
        auth_token="twilio-secret",
        from_number="+15550000000",
        transport=httpx.MockTransport(handler),
    )


# Realtime fakes


def principal_lookup(principals: Dict[UUID, Principal]) -> Authenticator:
    async def authenticate(user_id: UUID, token: Optional[str]) -> Optional[Principal]:
        return principals.get(user_id)

    return authenticate


class RecordingBroker(ChannelBroker):
    """ChannelBroker that also remembers everything published."""

    def __init__(self, principals: Optional[Dict[UUID, Principal]] = None) -> None:
        super().__init__(authenticator=principal_lookup(principals or {}))
        self.principals = principals if principals is not None else {}
        self.published: List[tuple] = []

    async def publish(self, channel, message_type, payload) -> int:
        self.published.append((channel, message_type, payload))
        return await super().publish(channel, message_type, payload)

    def events(self, message_type: ServerMessageType, channel: Optional[str] = None) -> List[dict]:
        return [
            payload
            for ch, kind, payload in self.published
            if kind == message_type and (channel is None or ch == channel)
        ]


class _Closed:
    def __init__(self, code: int) -> None:
        self.code = code


class InMemoryLink:
    """
    One connection between a client and a ChannelBroker.

    Acts as the broker-side connection (``send_json``) and the client
    transport (``send``/``recv``); ``close`` from either side ends both.
    """

    def __init__(self, broker: ChannelBroker) -> None:
        self.broker = broker
        self.session = None
        self.closed = False
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[dict] = []
        self.swallow: Set[str] = set()

    async def send_json(self, data) -> None:
        if self.closed:
            raise ConnectionResetError("link closed")
        await self.inbox.put(json.dumps(data))

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionLostError(code=1006)
        frame = json.loads(text)
        self.sent.append(frame)
        if frame.get("type") in self.swallow:
            return
        await self.broker.handle_raw(self.session, text)

    async def recv(self) -> str:
        item = await self.inbox.get()
        if isinstance(item, _Closed):
            raise ConnectionLostError(code=item.code)
        return item

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self.closed:
            return
        self.closed = True
        if self.session is not None:
            await self.broker.disconnect(self.session)
        await self.inbox.put(_Closed(code))

    async def drop(self, code: int = 1006) -> None:
        """Simulate the network going away."""
        await self.close(code)


class LinkFactory:
    """Client connector producing InMemoryLinks; ``gate`` holds connects back."""

    def __init__(self, broker: ChannelBroker) -> None:
        self.broker = broker
        self.links: List[InMemoryLink] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.refuse = False
        self.attempts = 0

    async def __call__(self) -> InMemoryLink:
        await self.gate.wait()
        self.attempts += 1
        if self.refuse:
            raise ConnectionRefusedError("connection refused")
        link = InMemoryLink(self.broker)
        self.links.append(link)
        link.session = await self.broker.connect(link)
        return link

    @property
    def current(self) -> InMemoryLink:
        return self.links[-1]


@pytest.fixture
def realtime_principals(sample_ids) -> Dict[UUID, Principal]:
    restaurant_id, owner_id, customer_id = sample_ids
    return {
        owner_id: Principal(user_id=owner_id, role="owner", restaurant_id=restaurant_id),
        customer_id: Principal(user_id=customer_id, role="customer"),
    }


@pytest.fixture
def sample_ids():
    """Restaurant, owner and customer ids for realtime tests."""
    return uuid4(), uuid4(), uuid4()


@pytest.fixture
def broker(realtime_principals) -> RecordingBroker:
    return RecordingBroker(realtime_principals)


@pytest.fixture
def link_factory(broker) -> LinkFactory:
    return LinkFactory(broker)


@pytest.fixture
def new_link(broker) -> Callable[[], InMemoryLink]:
    """Open a raw broker connection without a client on top."""

    async def _open(target: Optional[ChannelBroker] = None) -> InMemoryLink:
        target = target or broker
        link = InMemoryLink(target)
        link.session = await target.connect(link)
        return link

    return _open


async def drain(link: InMemoryLink) -> List[dict]:
    """Everything the broker has sent to ``link`` so far."""
    frames = []
    while not link.inbox.empty():
        item = link.inbox.get_nowait()
        if isinstance(item, _Closed):
            continue
        frames.append(json.loads(item))
    return frames


@pytest.fixture
def drain_link():
    return drain


@pytest.fixture
def wait_until():
    """Poll ``predicate`` until true or fail after ``timeout`` seconds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait
