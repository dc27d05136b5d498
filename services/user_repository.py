"""Lookup of user accounts."""

import threading

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from models.users import User
from schema.users import UserInDB


class UserRepository(ABC):
    """Read access to user accounts."""

    @abstractmethod
    async def get_by_id(self, user_id: int) -> Optional[UserInDB]:
        ...

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[UserInDB]:
        ...

    @abstractmethod
    async def list_users(self) -> List[UserInDB]:
        ...


class InMemoryUserRepository(UserRepository):
    """Process local user store, seeded explicitly."""

    def __init__(self, users: Optional[List[UserInDB]] = None):
        self._users: Dict[int, UserInDB] = {}
        self._lock = threading.Lock()
        for user in users or []:
            self.add(user)

    def add(self, user: UserInDB) -> UserInDB:
        with self._lock:
            self._users[user.user_id] = user
        return user

    async def get_by_id(self, user_id: int) -> Optional[UserInDB]:
        with self._lock:
            return self._users.get(user_id)

    async def get_by_email(self, email: str) -> Optional[UserInDB]:
        email = email.lower()
        with self._lock:
            for user in self._users.values():
                if str(user.email).lower() == email:
                    return user
        return None

    async def list_users(self) -> List[UserInDB]:
        with self._lock:
            return sorted(self._users.values(), key=lambda user: user.user_id)


class BeanieUserRepository(UserRepository):
    """MongoDB backed user repository. Requires `init_beanie` with `User`."""

    async def get_by_id(self, user_id: int) -> Optional[UserInDB]:
        user = await User.find_one(User.user_id == user_id)
        return user.to_schema() if user else None

    async def get_by_email(self, email: str) -> Optional[UserInDB]:
        user = await User.find_one(User.email == email.lower())
        return user.to_schema() if user else None

    async def list_users(self) -> List[UserInDB]:
        users = await User.find_all().sort("+user_id").to_list()
        return [user.to_schema() for user in users]
