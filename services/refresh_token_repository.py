"""Persistence of refresh tokens.

`revoke` is a conditional update: it succeeds for exactly one caller per token,
which is what makes refresh token rotation single use.
"""

import threading

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from beanie.operators import Set
from pymongo import DESCENDING, ReturnDocument

from models.security import RefreshToken, Counter
from schema.security import RefreshTokenRecord


class RefreshTokenRepository(ABC):
    """Storage contract for refresh tokens."""

    @abstractmethod
    async def add(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        """Persist `record` and return it with its assigned `token_id`."""

    @abstractmethod
    async def get_by_token_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        ...

    @abstractmethod
    async def get_latest_by_user_id(self, user_id: int) -> Optional[RefreshTokenRecord]:
        """Most recently issued non revoked token of the user."""

    @abstractmethod
    async def get_active_by_user_id(self, user_id: int, now: datetime) -> List[RefreshTokenRecord]:
        """Non revoked, unexpired tokens of the user, oldest first."""

    @abstractmethod
    async def revoke(self, token_id: int, reason: str, now: datetime) -> bool:
        """Revoke a token. Returns True only if this call flipped it to revoked."""

    @abstractmethod
    async def revoke_all_by_user_id(self, user_id: int, reason: str, now: datetime) -> int:
        ...

    @abstractmethod
    async def cleanup_expired(self, now: datetime) -> int:
        """Delete expired tokens and return how many were removed."""


class InMemoryRefreshTokenRepository(RefreshTokenRepository):
    """Process local repository for single instance deployments and tests."""

    def __init__(self):
        self._tokens: Dict[int, RefreshTokenRecord] = {}
        self._next_id = 1
        self._lock = threading.Lock()

    async def add(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._lock:
            stored = record.model_copy(update={"token_id": self._next_id})
            self._tokens[stored.token_id] = stored
            self._next_id += 1
        return stored.model_copy()

    async def get_by_token_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._lock:
            for record in self._tokens.values():
                if record.token_hash == token_hash:
                    return record.model_copy()
        return None

    async def get_latest_by_user_id(self, user_id: int) -> Optional[RefreshTokenRecord]:
        with self._lock:
            candidates = [
                record for record in self._tokens.values()
                if record.user_id == user_id and not record.is_revoked
            ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda record: (record.issued_at, record.token_id))
        return latest.model_copy()

    async def get_active_by_user_id(self, user_id: int, now: datetime) -> List[RefreshTokenRecord]:
        with self._lock:
            active = [
                record.model_copy() for record in self._tokens.values()
                if record.user_id == user_id and record.is_active(now)
            ]
        return sorted(active, key=lambda record: (record.issued_at, record.token_id))

    async def revoke(self, token_id: int, reason: str, now: datetime) -> bool:
        with self._lock:
            record = self._tokens.get(token_id)
            if record is None or record.is_revoked:
                return False
            record.is_revoked = True
            record.revoked_at = now
            record.revoked_reason = reason
            return True

    async def revoke_all_by_user_id(self, user_id: int, reason: str, now: datetime) -> int:
        revoked = 0
        with self._lock:
            for record in self._tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    record.revoked_at = now
                    record.revoked_reason = reason
                    revoked += 1
        return revoked

    async def cleanup_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [token_id for token_id, record in self._tokens.items() if record.is_expired(now)]
            for token_id in expired:
                del self._tokens[token_id]
        return len(expired)


class BeanieRefreshTokenRepository(RefreshTokenRepository):
    """MongoDB backed repository. Requires `init_beanie` with `RefreshToken` and `Counter`."""

    counter_name = "refresh_tokens"

    async def _next_token_id(self) -> int:
        result = await Counter.get_motor_collection().find_one_and_update(
            {"name": self.counter_name},
            {"$inc": {"value": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(result["value"])

    async def add(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        token_id = await self._next_token_id()
        document = RefreshToken(**record.model_dump(exclude={"token_id"}), token_id=token_id)
        await document.insert()
        return document.to_record()

    async def get_by_token_hash(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        document = await RefreshToken.find_one(RefreshToken.token_hash == token_hash)
        return document.to_record() if document else None

    async def get_latest_by_user_id(self, user_id: int) -> Optional[RefreshTokenRecord]:
        documents = (
            await RefreshToken.find(
                RefreshToken.user_id == user_id, RefreshToken.is_revoked == False  # noqa: E712
            )
            .sort([("issued_at", DESCENDING), ("token_id", DESCENDING)])
            .limit(1)
            .to_list()
        )
        return documents[0].to_record() if documents else None

    async def get_active_by_user_id(self, user_id: int, now: datetime) -> List[RefreshTokenRecord]:
        documents = (
            await RefreshToken.find(
                RefreshToken.user_id == user_id,
                RefreshToken.is_revoked == False,  # noqa: E712
                RefreshToken.expires_at > now,
            )
            .sort("+issued_at", "+token_id")
            .to_list()
        )
        return [document.to_record() for document in documents]

    async def revoke(self, token_id: int, reason: str, now: datetime) -> bool:
        # The is_revoked filter makes the update a compare and set
        result = await RefreshToken.find_one(
            RefreshToken.token_id == token_id, RefreshToken.is_revoked == False  # noqa: E712
        ).update(
            Set({RefreshToken.is_revoked: True, RefreshToken.revoked_at: now, RefreshToken.revoked_reason: reason})
        )
        return bool(result and result.modified_count == 1)

    async def revoke_all_by_user_id(self, user_id: int, reason: str, now: datetime) -> int:
        result = await RefreshToken.find(
            RefreshToken.user_id == user_id, RefreshToken.is_revoked == False  # noqa: E712
        ).update(
            Set({RefreshToken.is_revoked: True, RefreshToken.revoked_at: now, RefreshToken.revoked_reason: reason})
        )
        return result.modified_count if result else 0

    async def cleanup_expired(self, now: datetime) -> int:
        result = await RefreshToken.find(RefreshToken.expires_at <= now).delete()
        return result.deleted_count if result else 0

