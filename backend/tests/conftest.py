"""
Pytest fixtures for test database, client, authentication and the catalog.

Tests run against a throwaway SQLite file (aiosqlite) so several sessions can
race on the same rows, the way concurrent requests do in production. The
environment is set before the app is imported so settings, the engine and the
session factory all point at it.
"""

import os
import tempfile

os.environ.setdefault(
    "TEST_DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "rail_booking_test.db"),
)
os.environ["DATABASE_URL"] = os.environ["TEST_DATABASE_URL"]
os.environ["REDIS_ENABLED"] = "false"
os.environ["PENDING_BOOKING_SWEEP_ENABLED"] = "false"
os.environ["MPESA_CALLBACK_TOKEN"] = ""

from datetime import date, time, timedelta
from itertools import count
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession

from app.main import app
from app.db.base import Base
from app.db.session import AsyncSessionLocal as TestSessionLocal, engine as test_engine, get_db
from app.core.security import create_access_token, hash_password
from app.core.timeutils import utcnow
from app.infrastructure.mpesa import get_payment_gateway
from app.models import Passenger, Route, Seat, Station, Train, TrainClass, User
from app.services.interfaces.payment_gateway import PaymentGateway, StkPushResponse, StkQueryResponse


class FakeGateway(PaymentGateway):
    """In-memory gateway: records STK pushes, answers queries from query_results."""

    def __init__(self):
        self.is_configured = True
        self.pushes: list[dict] = []
        self.queries: list[str] = []
        self.query_results: dict[str, StkQueryResponse] = {}
        self._ids = count(1)

    @property
    def configured(self) -> bool:
        return self.is_configured

    async def stk_push(self, phone_number, amount, account_reference, description) -> StkPushResponse:
        checkout_request_id = f"ws_CO_TEST_{next(self._ids)}"
        self.pushes.append({
            "checkout_request_id": checkout_request_id,
            "phone_number": phone_number,
            "amount": amount,
            "account_reference": account_reference,
            "description": description,
        })
        return StkPushResponse(
            checkout_request_id=checkout_request_id,
            merchant_request_id=f"MR_{checkout_request_id}",
            customer_message="Success. Request accepted for processing",
        )

    async def query_stk_status(self, checkout_request_id: str) -> StkQueryResponse:
        self.queries.append(checkout_request_id)
        return self.query_results.get(
            checkout_request_id, StkQueryResponse(checkout_request_id=checkout_request_id)
        )


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create tables, yield session, then drop tables for isolation."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, gateway: FakeGateway) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client that overrides the DB session and the payment gateway."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def _create_user(db: AsyncSession, email: str, full_name: str) -> User:
    user = User(
        email=email,
        full_name=full_name,
        phone="0712345678",
        hashed_password=hash_password("testpassword123"),
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "test@example.com", "Test Traveller")


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    return await _create_user(db_session, "other@example.com", "Other Traveller")


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict:
    """Authorization headers with Bearer token."""
    return {"Authorization": f"Bearer {create_access_token(data={'sub': str(test_user.id)})}"}


@pytest_asyncio.fixture
async def other_auth_headers(other_user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(data={'sub': str(other_user.id)})}"}


@pytest_asyncio.fixture
async def catalog(db_session: AsyncSession) -> dict:
    """
    Nairobi -> Mombasa (480 km), one train with an economy class of four seats
    at 2.5/km (fare 1200) and a first class of two seats at 10/km (fare 4800).
    """
    nairobi = Station(name="Nairobi Terminus", code="NRB", city="Nairobi")
    mombasa = Station(name="Mombasa Terminus", code="MSA", city="Mombasa")
    db_session.add_all([nairobi, mombasa])
    await db_session.flush()

    route = Route(
        name="Nairobi - Mombasa",
        origin_station_id=nairobi.id,
        destination_station_id=mombasa.id,
        distance_km=480,
        duration_minutes=300,
    )
    db_session.add(route)
    await db_session.flush()

    train = Train(
        name="Madaraka Express",
        number="MX101",
        route_id=route.id,
        departure_time=time(8, 0),
        arrival_time=time(13, 0),
    )
    db_session.add(train)
    await db_session.flush()

    economy = TrainClass(train_id=train.id, class_type="economy", total_seats=4, price_per_km=2.5)
    first = TrainClass(train_id=train.id, class_type="first_class", total_seats=2, price_per_km=10.0)
    db_session.add_all([economy, first])
    await db_session.flush()

    economy_seats = [
        Seat(train_class_id=economy.id, seat_number=f"E{n}", is_window=n % 2 == 1) for n in range(1, 5)
    ]
    first_seats = [
        Seat(train_class_id=first.id, seat_number=f"F{n}", is_window=n == 1) for n in range(1, 3)
    ]
    db_session.add_all(economy_seats + first_seats)
    await db_session.commit()

    # Plain ids: a rolled-back transaction expires ORM instances held by tests
    return {
        "origin_id": nairobi.id,
        "destination_id": mombasa.id,
        "route_id": route.id,
        "train_id": train.id,
        "economy_id": economy.id,
        "first_id": first.id,
        "seat_ids": [s.id for s in economy_seats],
        "first_seat_ids": [s.id for s in first_seats],
    }


@pytest.fixture
def travel_date() -> date:
    return utcnow().date() + timedelta(days=7)


async def _create_passenger(db: AsyncSession, user: User, id_number: str) -> Passenger:
    passenger = Passenger(user_id=user.id, full_name=user.full_name, id_number=id_number, phone=user.phone)
    db.add(passenger)
    await db.commit()
    await db.refresh(passenger)
    return passenger


@pytest_asyncio.fixture
async def passenger(db_session: AsyncSession, test_user: User) -> Passenger:
    return await _create_passenger(db_session, test_user, "12345678")


@pytest_asyncio.fixture
async def other_passenger(db_session: AsyncSession, other_user: User) -> Passenger:
    return await _create_passenger(db_session, other_user, "87654321")
