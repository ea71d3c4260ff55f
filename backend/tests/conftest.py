"""Shared fixtures: in-memory database, fixed clock, service instances."""

import base64
from datetime import UTC, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from secondfactor.auth.crypto import AesGcmSecretCipher
from secondfactor.config import Settings
from secondfactor.database import Base
from secondfactor.services.enrollment import EnrollmentService
from secondfactor.services.verification import VerificationGateway

TEST_ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode()
TEST_USER_ID = "3f0c7a52-8d4e-4b61-9a57-2c1e6f9b0d13"


class FakeClock:
    """Settable time source."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        secret_encryption_key=TEST_ENCRYPTION_KEY,
        backup_code_bcrypt_rounds=4,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def cipher(settings: Settings) -> AesGcmSecretCipher:
    return AesGcmSecretCipher.from_settings(settings)


@pytest.fixture
async def engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def enrollment(db, cipher, clock, settings) -> EnrollmentService:
    return EnrollmentService(db, cipher=cipher, clock=clock, settings=settings)


@pytest.fixture
def gateway(db, cipher, clock, settings) -> VerificationGateway:
    return VerificationGateway(db, cipher=cipher, clock=clock, settings=settings)


@pytest.fixture
async def client(session_maker, cipher, clock, settings):
    """API client logged in as TEST_USER_ID with the second factor satisfied."""
    from secondfactor.auth.middleware import (
        get_clock,
        get_secret_cipher,
        get_session_user_id_optional,
    )
    from secondfactor.config import get_settings
    from secondfactor.database import get_db
    from secondfactor.main import app

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_secret_cipher] = lambda: cipher
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_session_user_id_optional] = lambda: TEST_USER_ID

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
