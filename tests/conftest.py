"""Shared fixtures: a throwaway SQLite database and booking builders."""
import uuid
from datetime import date, time, timedelta
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import courtpay.models  # noqa: F401
from courtpay.core.database import Base
from courtpay.core.encryption import encrypt_credential
from courtpay.core.timeutils import utcnow
from courtpay.models import Booking, Court, Tenant
from courtpay.models.enums import BookingPaymentStatus, BookingStatus

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
OTHER_KEY = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"

BOOKING_DATE = date(2024, 6, 15)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'courtpay-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return FakeClock()


async def create_tenant(
    session_factory,
    is_active: bool = True,
    mercadopago_enabled: bool = False,
    access_token: Optional[str] = None,
    webhook_secret: Optional[str] = None,
    environment: str = "sandbox",
    encrypt: bool = True,
    key: str = TEST_KEY,
) -> Tenant:
    """Create a tenant, encrypting the given secrets unless told otherwise."""
    slug = f"club-{uuid.uuid4().hex[:8]}"

    def _secret(value):
        if value is None or not encrypt:
            return value
        return encrypt_credential(value, key)

    tenant = Tenant(
        id=str(uuid.uuid4()),
        name=f"Club {slug}",
        slug=slug,
        is_active=is_active,
        mercadopago_enabled=mercadopago_enabled,
        mercadopago_access_token=_secret(access_token),
        mercadopago_webhook_secret=_secret(webhook_secret),
        mercadopago_environment=environment,
    )
    async with session_factory() as db:
        db.add(tenant)
        await db.commit()
    return tenant


async def create_court(session_factory, tenant: Tenant, name: str = "Court 1") -> Court:
    court = Court(id=str(uuid.uuid4()), tenant_id=tenant.id, name=name)
    async with session_factory() as db:
        db.add(court)
        await db.commit()
    return court


async def create_booking(
    session_factory,
    court: Court,
    start: time = time(10, 0),
    end: time = time(11, 30),
    status: BookingStatus = BookingStatus.PENDING,
    booking_date: date = BOOKING_DATE,
    expires_in: Optional[timedelta] = timedelta(minutes=15),
    deposit_amount: Decimal = Decimal("5000.00"),
    cancellation_reason: Optional[str] = None,
) -> Booking:
    """Create a booking on court. ``expires_in=None`` means the hold does not expire."""
    now = utcnow()
    booking = Booking(
        id=str(uuid.uuid4()),
        tenant_id=court.tenant_id,
        court_id=court.id,
        booking_date=booking_date,
        start_time=start,
        end_time=end,
        status=status.value,
        payment_status=BookingPaymentStatus.PENDING.value,
        deposit_amount=deposit_amount,
        expires_at=now + expires_in if expires_in is not None else None,
        cancelled_at=now if status == BookingStatus.CANCELLED else None,
        cancellation_reason=cancellation_reason,
    )
    async with session_factory() as db:
        db.add(booking)
        await db.commit()
    return booking


async def get_booking(session_factory, booking_id: str) -> Booking:
    async with session_factory() as db:
        return await db.get(Booking, booking_id)


@pytest_asyncio.fixture
async def tenant(session_factory):
    return await create_tenant(session_factory)


@pytest_asyncio.fixture
async def court(session_factory, tenant):
    return await create_court(session_factory, tenant)
