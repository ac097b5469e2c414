# This project was developed with assistance from AI tools.
"""Identity store interface and in-memory implementation."""

import logging
from collections.abc import Iterable

from ..schemas.auth import User

logger = logging.getLogger(__name__)


class UserStore:
    """Keyed lookup of user snapshots. Implementations may raise
    ``StoreUnavailableError`` when the backing system is unreachable."""

    async def get_user(self, user_id: str) -> User | None:
        raise NotImplementedError


class InMemoryUserStore(UserStore):
    def __init__(self, users: Iterable[User] = ()):
        self._users = {u.user_id: u for u in users}

    async def get_user(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def upsert(self, user: User) -> None:
        self._users[user.user_id] = user


_user_store: UserStore | None = None


def get_user_store() -> UserStore:
    global _user_store  # noqa: PLW0603
    if _user_store is None:
        _user_store = InMemoryUserStore()
    return _user_store
