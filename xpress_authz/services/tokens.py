# This project was developed with assistance from AI tools.
"""Registry of issued temporary access tokens.

The decision engine consults this on every evaluation, so a revocation is
effective for the very next request no matter what the caller's user
snapshot still carries.
"""

import asyncio
import logging
from collections.abc import Iterable
from datetime import datetime

from ..schemas.auth import TemporaryAccessToken

logger = logging.getLogger(__name__)


class TokenRegistry:
    """In-memory token store keyed by token id."""

    def __init__(self):
        self._tokens: dict[str, TemporaryAccessToken] = {}
        self._lock = asyncio.Lock()

    async def register(self, token: TemporaryAccessToken) -> None:
        async with self._lock:
            self._tokens[token.token_id] = token
        logger.info(
            "Issued token %s for %s (%s) until %s",
            token.token_id,
            token.requester_id,
            token.workflow_action.value,
            token.expires_at.isoformat(),
        )

    async def get(self, token_id: str) -> TemporaryAccessToken | None:
        return self._tokens.get(token_id)

    async def tokens_for(self, user_id: str) -> list[TemporaryAccessToken]:
        return [t for t in self._tokens.values() if t.requester_id == user_id]

    async def revoke(self, token_id: str, at: datetime) -> TemporaryAccessToken | None:
        """Mark a token revoked. Returns the updated token, or None if unknown."""
        async with self._lock:
            token = self._tokens.get(token_id)
            if token is None:
                return None
            if token.revoked_at is None:
                token = token.model_copy(update={"revoked_at": at})
                self._tokens[token_id] = token
        return token

    async def resolve_active(
        self,
        user_id: str,
        carried: Iterable[TemporaryAccessToken],
        now: datetime,
    ) -> list[TemporaryAccessToken]:
        """Live tokens for a user: the ones the snapshot carries plus the ones
        issued here, with this registry's revocation state taking precedence."""
        merged: dict[str, TemporaryAccessToken] = {t.token_id: t for t in carried}
        for token in await self.tokens_for(user_id):
            merged[token.token_id] = token
        active = []
        for token_id, token in merged.items():
            known = self._tokens.get(token_id)
            if known is not None and known.revoked_at is not None:
                continue
            if token.is_active(now):
                active.append(token)
        return sorted(active, key=lambda t: t.token_id)


_token_registry: TokenRegistry | None = None


def get_token_registry() -> TokenRegistry:
    """Return the process-wide token registry shared by engine and orchestrator."""
    global _token_registry  # noqa: PLW0603
    if _token_registry is None:
        _token_registry = TokenRegistry()
    return _token_registry
