"""
Pytest fixtures for test database, client, locks and gateway stubs.

Every test gets its own SQLite file (aiosqlite) with the schema created from
the models, so tests never share rows. Gateways are the real clients wired
to httpx.MockTransport stubs.
"""

import json
import os

# Must be set before studyhall.core.config is imported anywhere
os.environ["ENVIRONMENT"] = "test"
os.environ["REDIS_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./studyhall_unused.db"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["SECRET_KEY"] = "test-secret-key"

from datetime import date, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from studyhall.main import app
from studyhall.core.security import create_access_token
from studyhall.db.base import Base
from studyhall.db.session import get_db
from studyhall.infrastructure.gateways import EKQRGateway, RazorpayGateway, get_gateways
from studyhall.models.reservation import PaymentStatus, Reservation
from studyhall.models.transaction import PaymentTransaction
from studyhall.models.venue import Resource, Venue
from studyhall.services.interfaces.local_lock import LocalReservationLock
from studyhall.services.strategy_factory import get_reservation_lock

EKQR_SECRET = "ekqr-webhook-secret"
RAZORPAY_KEY_SECRET = "rzp-key-secret"
RAZORPAY_WEBHOOK_SECRET = "rzp-webhook-secret"
ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}


class EKQRStub:
    """In-memory EKQR API. `statuses` maps client_txn_id -> status ("error" answers 500)."""

    def __init__(self):
        self.statuses: dict[str, str] = {}
        self.created: list[dict] = []
        self.status_checks: list[dict] = []
        self.down = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        body = json.loads(request.content)
        if request.url.path.endswith("/create_order"):
            self.created.append(body)
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "msg": "Order Created",
                    "data": {
                        "order_id": len(self.created),
                        "payment_url": f"https://pay.ekqr.test/{body['client_txn_id']}",
                    },
                },
            )
        if request.url.path.endswith("/check_order_status"):
            self.status_checks.append(body)
            status = self.statuses.get(body["client_txn_id"], "pending")
            if status == "error":
                return httpx.Response(500, text="upstream unavailable")
            return httpx.Response(
                200,
                json={"status": True, "data": {"status": status, "upi_txn_id": "UPI-42"}},
            )
        return httpx.Response(404, json={"status": False, "msg": "not found"})


class RazorpayStub:
    """In-memory Razorpay orders API. `order_status` maps order id -> status."""

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.order_status: dict[str, str] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path.endswith("/orders"):
            body = json.loads(request.content)
            order_id = f"order_{len(self.orders) + 1:04d}"
            order = {"id": order_id, "status": "created", "amount": body["amount"], "receipt": body["receipt"]}
            self.orders[order_id] = order
            return httpx.Response(200, json=order)
        if request.method == "GET" and "/orders/" in path:
            order_id = path.rsplit("/", 1)[-1]
            order = self.orders.get(order_id)
            if order is None:
                return httpx.Response(404, json={"error": {"code": "BAD_REQUEST_ERROR"}})
            status = self.order_status.get(order_id, "attempted")
            paid = order["amount"] if status == "paid" else 0
            return httpx.Response(200, json={**order, "status": status, "amount_paid": paid})
        return httpx.Response(404, json={})


@pytest.fixture
def ekqr_stub() -> EKQRStub:
    return EKQRStub()


@pytest.fixture
def razorpay_stub() -> RazorpayStub:
    return RazorpayStub()


@pytest.fixture
def gateways(ekqr_stub, razorpay_stub) -> dict:
    return {
        "ekqr": EKQRGateway(
            api_key="ekqr-test-key",
            base_url="https://ekqr.test/api",
            redirect_url="https://studyhall.test/paid",
            webhook_secret=EKQR_SECRET,
            transport=httpx.MockTransport(ekqr_stub),
        ),
        "razorpay": RazorpayGateway(
            key_id="rzp_test_key",
            key_secret=RAZORPAY_KEY_SECRET,
            webhook_secret=RAZORPAY_WEBHOOK_SECRET,
            base_url="https://razorpay.test/v1",
            transport=httpx.MockTransport(razorpay_stub),
        ),
    }


@pytest.fixture
def lock() -> LocalReservationLock:
    return LocalReservationLock(blocking_timeout=5)


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, lock, gateways) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client; each request gets its own session, like production."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_reservation_lock] = lambda: lock
    app.dependency_overrides[get_gateways] = lambda: gateways

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {create_access_token('user-1')}"}


@pytest.fixture
def future() -> date:
    """A day far enough ahead that nothing expires during the test."""
    return date.today() + timedelta(days=30)


@pytest_asyncio.fixture
async def venue(db_session: AsyncSession) -> Venue:
    venue = Venue(
        name="Quiet Corner Study Hall",
        kind="study_hall",
        daily_price=Decimal("100.00"),
        weekly_price=Decimal("600.00"),
        monthly_price=Decimal("2000.00"),
    )
    db_session.add(venue)
    await db_session.commit()
    return venue


@pytest_asyncio.fixture
async def seats(db_session: AsyncSession, venue: Venue) -> list[Resource]:
    seats = [Resource(venue_id=venue.id, label=f"A-{n}", kind="seat") for n in (1, 2, 3)]
    db_session.add_all(seats)
    await db_session.commit()
    return seats


@pytest_asyncio.fixture
async def seat(seats: list[Resource]) -> Resource:
    return seats[0]


async def add_reservation(
    db: AsyncSession,
    resource: Resource,
    start_date: date,
    end_date: date,
    status: str = "active",
    user_id: Optional[str] = "user-9",
    guest_name: Optional[str] = None,
) -> Reservation:
    """Insert a reservation directly, bypassing the booking path."""
    reservation = Reservation(
        resource_id=resource.id,
        venue_id=resource.venue_id,
        user_id=user_id,
        guest_name=guest_name,
        guest_phone="9999999999" if guest_name else None,
        start_date=start_date,
        end_date=end_date,
        status=status,
        payment_status=PaymentStatus.PAID if status in ("active", "confirmed", "completed") else PaymentStatus.UNPAID,
        total_amount=Decimal("100.00"),
        booking_period="daily",
    )
    db.add(reservation)
    await db.commit()
    return reservation


async def reload(db: AsyncSession, model, ident):
    """Fetch a row fresh from the database, ignoring the identity map."""
    return await db.get(model, ident, populate_existing=True)


async def transaction_by_id(db: AsyncSession, transaction_id: int) -> PaymentTransaction:
    return await reload(db, PaymentTransaction, transaction_id)
