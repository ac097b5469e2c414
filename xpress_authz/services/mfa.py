# This project was developed with assistance from AI tools.
"""MFA challenge issuance.

Verification itself happens in the identity provider; this service only
mints challenge records the client presents there.
"""

import logging
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from ..schemas.approval import MFAChallenge

logger = logging.getLogger(__name__)

CHALLENGE_TTL = timedelta(minutes=5)


class MFAService:
    async def create_challenge(
        self, user_id: str, method: str = "totp", context: dict[str, Any] | None = None
    ) -> MFAChallenge:
        raise NotImplementedError


class InMemoryMFAService(MFAService):
    def __init__(self):
        self._challenges: dict[str, MFAChallenge] = {}

    async def create_challenge(
        self, user_id: str, method: str = "totp", context: dict[str, Any] | None = None
    ) -> MFAChallenge:
        now = datetime.now(UTC)
        challenge = MFAChallenge(
            challenge_id=f"mfa_{secrets.token_urlsafe(16)}",
            user_id=user_id,
            method=method,
            created_at=now,
            expires_at=now + CHALLENGE_TTL,
            context=context or {},
        )
        self._challenges[challenge.challenge_id] = challenge
        logger.info("MFA challenge %s issued to %s", challenge.challenge_id, user_id)
        return challenge

    async def get_challenge(self, challenge_id: str) -> MFAChallenge | None:
        return self._challenges.get(challenge_id)


_mfa_service: MFAService | None = None


def get_mfa_service() -> MFAService:
    global _mfa_service  # noqa: PLW0603
    if _mfa_service is None:
        _mfa_service = InMemoryMFAService()
    return _mfa_service
