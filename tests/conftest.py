"""Pytest fixtures for storefront tests."""

from datetime import date, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from storefront.discounts import DiscountType
from storefront.models import Base, Coupon, Product
from storefront.payments import ChargeResult

ADMIN_PASSWORD = "Adm1nPassw0rd"


class FakeGateway:
    """Records charges and answers with a scripted result."""

    def __init__(self, success: bool = True, reason: str = "Card declined"):
        self.success = success
        self.reason = reason
        self.charges = []

    async def charge(self, amount, currency, metadata):
        self.charges.append({"amount": amount, "currency": currency, "metadata": metadata})
        if self.success:
            return ChargeResult(success=True, reference=f"ch_{len(self.charges)}")
        return ChargeResult(success=False, reason=self.reason)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    """Create an in-memory async SQLite engine."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def db(engine):
    """Provide an async session for each test."""
    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def make_product(db: AsyncSession):
    async def _make(name="Widget", price="10.00", is_digital=False, digital_file_path=None):
        product = Product(
            name=name,
            description=f"{name} description",
            price=Decimal(price),
            image_url=f"/images/{name.lower()}.png",
            is_digital=is_digital,
            digital_file_path=digital_file_path,
        )
        db.add(product)
        await db.commit()
        await db.refresh(product)
        return product
    return _make


@pytest_asyncio.fixture
async def make_coupon(db: AsyncSession):
    async def _make(code="SAVE5", discount_type=DiscountType.FIXED, value="5.00",
                    expiry_date=None, is_active=True):
        coupon = Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=Decimal(value),
            expiry_date=expiry_date or date.today() + timedelta(days=30),
            is_active=is_active,
        )
        db.add(coupon)
        await db.commit()
        await db.refresh(coupon)
        return coupon
    return _make


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def declined_gateway():
    return FakeGateway(success=False, reason="Insufficient funds")


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def digital_dir(tmp_path):
    path = tmp_path / "digital"
    path.mkdir()
    return path


@pytest.fixture
def client(tmp_path, digital_dir, gateway, monkeypatch):
    """TestClient against a fresh SQLite file with a seeded admin."""
    from fastapi.testclient import TestClient

    from shared.security_config import limiter
    from shared.utils import settings
    from storefront.main import app
    from storefront.payments import get_payment_gateway

    monkeypatch.setattr(settings, "DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setattr(settings, "ADMIN_USERNAME", "admin@example.com")
    monkeypatch.setattr(settings, "ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setattr(settings, "DIGITAL_FILES_DIR", str(digital_dir))
    monkeypatch.setattr(limiter, "enabled", False)
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_client(client):
    """Client with an admin session cookie."""
    response = client.post(
        "/admin/login",
        json={"username": "admin@example.com", "password": ADMIN_PASSWORD},
    )
    assert response.status_code == 200
    return client
