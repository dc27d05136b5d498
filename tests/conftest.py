import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-length")
os.environ.setdefault("APP_ENV", "production")

import logfire
import pytest

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from main import create_app
from schema.users import UserInDB
from security.helpers import get_password_hash
from security.tokens import TokenService
from services.rate_limit_store import InMemoryRateLimitStore
from services.refresh_token_repository import InMemoryRefreshTokenRepository
from services.user_repository import InMemoryUserRepository
from services.audit import AuditService
from utils.settings import AuthSettings, JwtSettings, Settings

logfire.configure(send_to_logfire=False, console=False)

PASSWORD = "CorrectHorse42!"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingAuditService(AuditService):
    """Keeps audit entries in memory, optionally failing on write."""

    def __init__(self, fail: bool = False):
        self.entries = []
        self.fail = fail

    async def log(self, entry) -> None:
        if self.fail:
            raise RuntimeError("audit store unavailable")
        self.entries.append(entry)


@pytest.fixture(scope="session")
def password_hash() -> str:
    return get_password_hash(PASSWORD)


@pytest.fixture
def jwt_settings() -> JwtSettings:
    return JwtSettings(secret_key="test-secret-key-with-enough-length")


@pytest.fixture
def auth_settings(request) -> AuthSettings:
    """Default auth settings, overridable through indirect parametrization."""
    return AuthSettings(**getattr(request, "param", {}))


@pytest.fixture
def settings(jwt_settings, auth_settings) -> Settings:
    return Settings(jwt=jwt_settings, auth=auth_settings)


@pytest.fixture
def user(password_hash) -> UserInDB:
    return UserInDB(
        user_id=1,
        username="amal",
        email="amal@ikhtibar.com",
        first_name="Amal",
        last_name="Haddad",
        password=password_hash,
        roles=["student"],
    )


@pytest.fixture
def admin(password_hash) -> UserInDB:
    return UserInDB(
        user_id=2,
        username="admin",
        email="admin@ikhtibar.com",
        first_name="Sami",
        last_name="Nasser",
        password=password_hash,
        roles=["system-admin"],
    )


@pytest.fixture
def user_repository(user, admin) -> InMemoryUserRepository:
    return InMemoryUserRepository([user, admin])


@pytest.fixture
def refresh_token_repository() -> InMemoryRefreshTokenRepository:
    return InMemoryRefreshTokenRepository()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def token_service(jwt_settings) -> TokenService:
    return TokenService(jwt_settings)


@pytest.fixture
def expired_token_service(jwt_settings) -> TokenService:
    """Issues tokens that expired an hour ago."""
    return TokenService(jwt_settings, clock=lambda: datetime.now(timezone.utc) - timedelta(hours=1))


@pytest.fixture
def audit_service() -> RecordingAuditService:
    return RecordingAuditService()


@pytest.fixture
def app(settings, user_repository, refresh_token_repository, audit_service, token_service):
    return create_app(
        settings,
        user_repository=user_repository,
        refresh_token_repository=refresh_token_repository,
        rate_limit_store=InMemoryRateLimitStore(),
        audit_service=audit_service,
        token_service=token_service,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def login(client, email="amal@ikhtibar.com", password=PASSWORD):
    return client.post("/api/auth/login", json={"email": email, "password": password})
