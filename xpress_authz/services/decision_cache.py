# This project was developed with assistance from AI tools.
"""TTL cache for access decisions.

Keys are fingerprints over everything a decision depends on: the user
snapshot, the permission, the context, the ids of the temporary tokens
that were still live in the token registry, and the region records read
from the directory. A revoked token, an edited role or a deactivated region
therefore produces a different key rather than a stale hit.

Expired entries are dropped lazily on read and by a periodic sweeper task
started from the application lifespan.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Mapping

from xpress_db.enums import Permission

from ..core.config import settings
from ..schemas.access import AccessContext, AccessDecision
from ..schemas.auth import User
from ..schemas.region import Region

logger = logging.getLogger(__name__)


def fingerprint(
    user: User,
    permission: Permission,
    context: AccessContext,
    token_ids: Iterable[str] = (),
    regions: Mapping[str, Region] | None = None,
) -> str:
    """SHA-256 over the canonical JSON of the decision inputs."""
    payload = {
        "user": user.model_dump(mode="json"),
        "permission": permission.value,
        "context": context.model_dump(mode="json"),
        "tokens": sorted(token_ids),
        "regions": {k: r.model_dump(mode="json") for k, r in sorted((regions or {}).items())},
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


class DecisionCache:
    """In-process TTL map of fingerprint -> AccessDecision."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        max_entries: int | None = None,
        *,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = settings.DECISION_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.max_entries = settings.DECISION_CACHE_MAX_ENTRIES if max_entries is None else max_entries
        self._timer = timer
        self._entries: OrderedDict[str, tuple[AccessDecision, float]] = OrderedDict()
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> AccessDecision | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            decision, expires = entry
            if self._timer() >= expires:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return decision

    async def set(self, key: str, decision: AccessDecision, ttl: float | None = None) -> None:
        """Store ``decision``; ``ttl`` may only shorten the default lifetime."""
        lifetime = self.ttl_seconds if ttl is None else min(ttl, self.ttl_seconds)
        if lifetime <= 0:
            return
        async with self._lock:
            self._entries[key] = (decision, self._timer() + lifetime)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Decision cache full, evicted %s", evicted[:12])

    async def invalidate(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()

    async def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        async with self._lock:
            now = self._timer()
            expired = [k for k, (_, expires) in self._entries.items() if now >= expires]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Decision cache sweep removed %d entries", len(expired))
        return len(expired)

    async def _sweep_forever(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Decision cache sweep failed")

    def start_sweeper(self, interval: float | None = None) -> None:
        """Start the periodic sweep task on the running loop (idempotent)."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        interval = settings.DECISION_CACHE_SWEEP_SECONDS if interval is None else interval
        self._sweeper = asyncio.create_task(self._sweep_forever(interval))

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
