import asyncio

from datetime import timedelta

import pytest

from beanie import init_beanie
from mongomock_motor import AsyncMongoMockClient

from models.security import AuditLog, Counter, RefreshToken
from models.users import User
from schema.audit import AuditCategory, AuditSeverity
from schema.security import RefreshTokenRecord
from security.refresh_token import RefreshFailure, RefreshTokenService
from security.tokens import TokenService
from services.audit import BeanieAuditService
from services.refresh_token_repository import BeanieRefreshTokenRepository
from services.user_repository import BeanieUserRepository
from utils.settings import AuthSettings


@pytest.fixture
async def database():
    # Mongo hands datetimes back without an offset unless the client is tz aware
    client = AsyncMongoMockClient()
    await init_beanie(
        database=client["ikhtibar_test"],
        document_models=[User, RefreshToken, AuditLog, Counter],
    )
    yield client["ikhtibar_test"]


@pytest.fixture
def repository(database) -> BeanieRefreshTokenRepository:
    return BeanieRefreshTokenRepository()


def make_record(now, user_id=1, token_hash="hash", lifetime=timedelta(days=7)) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        user_id=user_id,
        token_hash=token_hash,
        issued_at=now,
        expires_at=now + lifetime,
    )


async def test_token_ids_are_sequential(repository, clock):
    first = await repository.add(make_record(clock.now, token_hash="a"))
    second = await repository.add(make_record(clock.now, token_hash="b"))

    assert (first.token_id, second.token_id) == (1, 2)


async def test_records_read_back_are_utc_aware(repository, clock):
    await repository.add(make_record(clock.now))

    stored = await repository.get_by_token_hash("hash")

    assert stored.issued_at.tzinfo is not None
    assert stored.expires_at.tzinfo is not None
    assert stored.is_active(clock.now)


async def test_rotation_against_mongodb(repository, jwt_settings, user_repository, user, clock):
    service = RefreshTokenService(
        TokenService(jwt_settings, clock=clock), repository, user_repository, AuthSettings(), clock=clock
    )
    issued = await service.issue(user)

    result = await service.rotate(issued.refresh_token)

    assert result.succeeded
    assert (await service.rotate(issued.refresh_token)).failure == RefreshFailure.REVOKED
    assert (await service.rotate(result.tokens.refresh_token)).succeeded


async def test_revoke_succeeds_exactly_once(repository, clock):
    record = await repository.add(make_record(clock.now))

    results = await asyncio.gather(
        *(repository.revoke(record.token_id, "Token refreshed", clock.now) for _ in range(5))
    )

    assert sum(results) == 1
    stored = await repository.get_by_token_hash("hash")
    assert stored.is_revoked
    assert stored.revoked_reason == "Token refreshed"


async def test_active_tokens_are_oldest_first(repository, clock):
    newest = await repository.add(make_record(clock.now + timedelta(minutes=2), token_hash="new"))
    oldest = await repository.add(make_record(clock.now, token_hash="old"))
    revoked = await repository.add(make_record(clock.now + timedelta(minutes=1), token_hash="revoked"))
    await repository.add(make_record(clock.now - timedelta(days=8), token_hash="expired"))
    await repository.add(make_record(clock.now, user_id=2, token_hash="other"))
    await repository.revoke(revoked.token_id, "User logout", clock.now)

    active = await repository.get_active_by_user_id(1, clock.now + timedelta(minutes=3))

    assert [record.token_id for record in active] == [oldest.token_id, newest.token_id]
    assert (await repository.get_latest_by_user_id(1)).token_id == newest.token_id


async def test_revoke_all_and_cleanup(repository, clock):
    await repository.add(make_record(clock.now, token_hash="a"))
    await repository.add(make_record(clock.now, token_hash="b"))
    await repository.add(make_record(clock.now - timedelta(days=8), user_id=2, token_hash="c"))

    assert await repository.revoke_all_by_user_id(1, "User logout", clock.now) == 2
    assert await repository.get_latest_by_user_id(1) is None

    assert await repository.cleanup_expired(clock.now) == 1
    assert await repository.get_by_token_hash("c") is None


async def test_user_repository(database, user, admin):
    for account in (admin, user):
        await User(**account.model_dump()).insert()
    users = BeanieUserRepository()

    assert (await users.get_by_email("AMAL@ikhtibar.com")).user_id == 1
    assert (await users.get_by_id(2)).username == "admin"
    assert await users.get_by_id(99) is None
    assert [account.user_id for account in await users.list_users()] == [1, 2]


async def test_audit_entries_are_persisted(database):
    entry = await BeanieAuditService().log_security_event("amal", "API_POST", "POST /api/auth/login - Status 200")

    [stored] = await AuditLog.find_all().to_list()

    assert stored.action == "API_POST"
    assert stored.category == AuditCategory.SECURITY
    assert stored.severity == AuditSeverity.HIGH
    assert stored.user_identifier == "amal"
    assert stored.details == entry.details
