import os

os.environ["BOOKING_DB"] = "sqlite+aiosqlite://"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["RATE_LIMIT_PER_MINUTE"] = "0"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "whsec-test"
os.environ.pop("RABBIT_URL", None)
os.environ.pop("PAYMENT_GATEWAY_URL", None)

from datetime import date, timedelta  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from booking_service import consumer  # noqa: E402
from booking_service.breaker import CircuitBreaker  # noqa: E402
from booking_service.constants import Role  # noqa: E402
from booking_service.db import Base, get_db, get_session  # noqa: E402
from booking_service.event_bus import EventBus  # noqa: E402
from booking_service.gateway import get_payment_gateway  # noqa: E402
from booking_service.models import Address, Service, WorkerService  # noqa: E402
from booking_service.notifications import dispatcher  # noqa: E402
from booking_service.routes import get_bus  # noqa: E402
from booking_service.schemas import CreateBookingRequest  # noqa: E402
from booking_service.security import Principal, create_access_token  # noqa: E402
from booking_service.seed import seed_coupons  # noqa: E402
from booking_service import state_machine as sm  # noqa: E402

CUSTOMER_ID = "customer-1"
OTHER_CUSTOMER_ID = "customer-2"
WORKER_ID = "worker-1"
OTHER_WORKER_ID = "worker-2"
ADMIN_ID = "admin-1"


class RecordingBus(EventBus):
    def __init__(self):
        super().__init__()
        self.emitted = []

    async def emit(self, event) -> None:
        self.emitted.append(event)
        await super().emit(event)

    def types(self) -> list[str]:
        return [e.type for e in self.emitted]


class DummyPipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def set(self, key, value, ex=None):
        self.ops.append(("set", key, value))
        return self

    def delete(self, key):
        self.ops.append(("delete", key))
        return self

    async def execute(self):
        for op in self.ops:
            if op[0] == "set":
                self.redis.store[op[1]] = op[2]
            else:
                self.redis.store.pop(op[1], None)
        self.ops = []


class DummyRedis:
    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def incr(self, key):
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    async def expire(self, key, seconds):
        return True

    def pipeline(self):
        return DummyPipeline(self)


class FakeGateway:
    enabled = True

    def __init__(self, redis=None):
        self.orders = []
        self.refunds = []
        self.breaker = CircuitBreaker("payment-gateway", client=redis or DummyRedis())

    async def create_order(self, amount, receipt=None, request_id=None):
        self.orders.append((amount, receipt))
        return f"order_{len(self.orders)}"

    async def refund(self, transaction_id, amount, request_id=None):
        self.refunds.append((transaction_id, amount))
        return f"rfnd_{len(self.refunds)}"


@pytest.fixture
async def engine(tmp_path):
    # file-backed so concurrent notification writes each get their own connection
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}", poolclass=NullPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    factory = get_session(engine)
    monkeypatch.setattr(dispatcher, "session_factory", factory)
    monkeypatch.setattr(consumer, "session_factory", factory)
    return factory


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def bus(session_factory):
    b = RecordingBus()
    dispatcher.register(b)
    return b


@pytest.fixture
def fake_redis():
    return DummyRedis()


@pytest.fixture
def gateway(fake_redis):
    return FakeGateway(fake_redis)


@pytest.fixture
async def seeded(session_factory):
    async with session_factory() as session:
        service = Service(id="svc-plumbing", title="Plumbing", category_id="cat-repairs", base_price=800)
        worker_service = WorkerService(
            id="ws-1", worker_id=WORKER_ID, service_id=service.id, custom_price=1000, is_active=True
        )
        address = Address(
            id="addr-1",
            user_id=CUSTOMER_ID,
            address_line="12 MG Road",
            city="Bengaluru",
            state="Karnataka",
            postal_code="560001",
        )
        other_address = Address(
            id="addr-2",
            user_id=OTHER_CUSTOMER_ID,
            address_line="4 Park Street",
            city="Kolkata",
            state="West Bengal",
            postal_code="700016",
        )
        session.add_all([service, worker_service, address, other_address])
        await session.commit()
        await seed_coupons(session)

    return SimpleNamespace(
        service=service,
        worker_service=worker_service,
        address=address,
        other_address=other_address,
        customer=Principal(CUSTOMER_ID, Role.CUSTOMER),
        other_customer=Principal(OTHER_CUSTOMER_ID, Role.CUSTOMER),
        worker=Principal(WORKER_ID, Role.WORKER),
        other_worker=Principal(OTHER_WORKER_ID, Role.WORKER),
        admin=Principal(ADMIN_ID, Role.ADMIN),
    )


@pytest.fixture
def booking_payload(seeded):
    def make(**overrides) -> dict:
        payload = {
            "workerId": WORKER_ID,
            "workerServiceId": seeded.worker_service.id,
            "addressId": seeded.address.id,
            "bookingDate": (date.today() + timedelta(days=3)).isoformat(),
            "timeSlot": "10:00-12:00",
            "paymentMethod": "online",
        }
        payload.update(overrides)
        return payload

    return make


@pytest.fixture
def make_booking(session_factory, seeded, booking_payload, bus, gateway):
    """Create a booking through the lifecycle service as the default customer."""

    async def make(principal=None, **overrides):
        data = CreateBookingRequest.model_validate(booking_payload(**overrides))
        async with session_factory() as session:
            booking, payment, _ = await sm.create_booking(
                session, principal or seeded.customer, data, bus, gateway=gateway
            )
        return booking, payment

    return make


@pytest.fixture
def auth_headers():
    def make(user_id: str, role: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}

    return make


@pytest.fixture
def app(session_factory, bus, gateway):
    from booking_service.main import app as fastapi_app

    async def override_db():
        async with session_factory() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = override_db
    fastapi_app.dependency_overrides[get_bus] = lambda: bus
    fastapi_app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
