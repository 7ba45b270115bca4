"""Shared test infrastructure for the Sublease Platform test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- storage: object storage rooted in a per-test temp directory
- notifier: mock notification sink capturing notify() calls
- make_user / make_property: directory row factories
- parties: a lister, a tenant and the lister's property
- agreement_service: AgreementService wired to the fixtures above
- signature_png: a real 1x1 PNG usable as a signature image
- sign_webhook: builds a Stripe-Signature header for a webhook body
"""

import base64
import hashlib
import hmac
import time
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from sublease_platform.infra.database import Base

import sublease_platform.domain.models  # noqa: F401

from sublease_platform.domain.models import Property, User
from sublease_platform.infra.object_storage import ObjectStorage
from sublease_platform.services.agreement_service import AgreementService

SIGNATURE_PNG_B64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def storage(tmp_path):
    return ObjectStorage(root_dir=tmp_path / "uploads", public_url="/uploads")


@pytest.fixture
def notifier():
    """Mock NotificationService; calls are recorded on notifier.notify."""
    mock = MagicMock()
    mock.notify = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def signature_png():
    return base64.b64decode(SIGNATURE_PNG_B64)


@pytest.fixture
def sign_webhook():
    """Sign a webhook body the way the processor does: HMAC-SHA256 over "<t>.<body>"."""
    def _sign(payload: bytes, secret: str, timestamp: int | None = None) -> str:
        ts = int(timestamp if timestamp is not None else time.time())
        digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


# ---------------------------------------------------------------------------
# Directory factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    """Factory that creates a User row.

    Usage:
        user = await make_user(name="Lena Lister")
    """
    async def _factory(name: str = "Test User", email: str | None = None) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email or f"{uuid.uuid4().hex[:10]}@test.com",
            name=name,
            is_active=True,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _factory


@pytest.fixture
def make_property(db_session):
    """Factory that creates a Property row owned by *owner*.

    Usage:
        prop = await make_property(owner, rent_cents=200000)
    """
    async def _factory(
        owner: User,
        rent_cents: int | None = 200000,
        title: str = "Sunny room near campus",
        address: str = "12 Elm St, Boston, MA",
    ) -> Property:
        prop = Property(
            id=str(uuid.uuid4()),
            owner_id=owner.id,
            title=title,
            address=address,
            rent_cents=rent_cents,
            is_active=True,
        )
        db_session.add(prop)
        await db_session.commit()
        return prop

    return _factory


@pytest.fixture
async def parties(make_user, make_property):
    lister = await make_user(name="Lena Lister", email="lister@test.com")
    tenant = await make_user(name="Tom Tenant", email="tenant@test.com")
    outsider = await make_user(name="Olive Outsider", email="outsider@test.com")
    prop = await make_property(lister)
    return SimpleNamespace(lister=lister, tenant=tenant, outsider=outsider, property=prop)


@pytest.fixture
def agreement_service(db_session, storage, notifier):
    return AgreementService(db_session, storage=storage, notifier=notifier)


@pytest.fixture
def complete_agreement(agreement_service, parties, signature_png):
    """Factory that drives an agreement to COMPLETED.

    Usage:
        agreement = await complete_agreement(tenant_method="card", lister_method=None)
    """
    async def _factory(tenant_method: str | None = "card", lister_method: str | None = "bank_transfer"):
        agreement = await agreement_service.initiate(
            parties.property.id, parties.tenant.id, parties.lister.id
        )
        await agreement_service.lock(agreement.id, parties.lister.id)
        await agreement_service.sign(
            agreement.id, parties.tenant.id, signature_png, "10.0.0.2", tenant_method
        )
        return await agreement_service.sign(
            agreement.id, parties.lister.id, signature_png, "10.0.0.1", lister_method
        )

    return _factory
