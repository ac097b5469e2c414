# This project was developed with assistance from AI tools.
"""Regional (multi-tenant) scope resolution.

``RegionDirectory`` is the async keyed store of region records. The engine
fetches the requested region and its ancestor chain up front, then hands
the records to ``RegionScopeResolver.resolve``, which is pure and
synchronous so the policy math stays testable without I/O.

Hierarchy edges come from two places: each region's ``parent_id`` in the
directory, and the ``region_hierarchy`` mapping (parent -> children) a caller
may attach to the request context. A grant on an ancestor covers its
descendants.
"""

import logging
import re
from collections.abc import Iterable, Iterator, Mapping
from datetime import datetime

from xpress_db.enums import Role

from ..core.auth import active_assignments
from ..core.config import settings
from ..schemas.access import AccessContext
from ..schemas.auth import TemporaryAccessToken, User
from ..schemas.region import Region, RegionScopeResult

logger = logging.getLogger(__name__)

WILDCARD_REGION = "*"

CASE_ID_PATTERN = re.compile(r"^[A-Z]{2,10}-\d{4}-\d{3,}(-[A-Z0-9]+)?$")

_CROSS_REGION_ROLES = frozenset({Role.SUPPORT, Role.RISK_INVESTIGATOR})

DEFAULT_REGIONS: tuple[Region, ...] = (
    Region(region_id="ncr-manila", name="NCR Manila"),
    Region(region_id="cebu", name="Metro Cebu"),
    Region(region_id="davao", name="Davao"),
    Region(region_id="baguio", name="Baguio"),
    Region(region_id="iloilo", name="Iloilo"),
    Region(region_id="zamboanga", name="Zamboanga", is_active=False),
)


class RegionDirectory:
    """Async keyed store of regions. Subclasses implement ``get_region``."""

    async def get_region(self, region_id: str) -> Region | None:
        raise NotImplementedError

    async def get_lineage(self, region_id: str, max_hops: int) -> dict[str, Region]:
        """Fetch ``region_id`` and up to ``max_hops`` ancestors.

        Stops early at a root or when a region repeats, so a corrupted
        parent chain cannot loop forever.
        """
        found: dict[str, Region] = {}
        current: str | None = region_id
        for _ in range(max_hops + 1):
            if current is None or current in found:
                break
            region = await self.get_region(current)
            if region is None:
                break
            found[current] = region
            current = region.parent_id
        return found


class InMemoryRegionDirectory(RegionDirectory):
    def __init__(self, regions: Iterable[Region] = DEFAULT_REGIONS):
        self._regions = {r.region_id: r for r in regions}

    async def get_region(self, region_id: str) -> Region | None:
        return self._regions.get(region_id)

    def upsert(self, region: Region) -> None:
        self._regions[region.region_id] = region


def _parent_map(
    regions: Mapping[str, Region],
    hierarchy: Mapping[str, Iterable[str]],
) -> dict[str, set[str]]:
    """Build child -> parents from directory links plus the caller's hierarchy."""
    parents: dict[str, set[str]] = {}
    for region in regions.values():
        if region.parent_id:
            parents.setdefault(region.region_id, set()).add(region.parent_id)
    for parent, children in hierarchy.items():
        for child in children:
            parents.setdefault(child, set()).add(parent)
    return parents


def walk_ancestors(
    start: str, parents: Mapping[str, set[str]], limit: int | None = None
) -> tuple[set[str], int, bool]:
    """Walk parent edges from ``start`` without recursion.

    Returns (ancestors, depth of the longest ancestor chain, cycle_found).
    With ``limit`` set the walk stops as soon as a chain grows longer than
    ``limit`` and reports that chain's length as the depth.
    """
    depth: dict[str, int] = {}
    best: dict[str, int] = {start: 0}
    ancestors: set[str] = set()
    on_path = {start}
    stack: list[tuple[str, Iterator[str]]] = [(start, iter(parents.get(start, ())))]
    cycle = False

    while stack:
        node, pending = stack[-1]
        parent = next(pending, None)
        if parent is None:
            stack.pop()
            on_path.discard(node)
            depth[node] = best.pop(node)
            if stack:
                child = stack[-1][0]
                best[child] = max(best[child], 1 + depth[node])
            continue
        ancestors.add(parent)
        if parent in depth:
            best[node] = max(best[node], 1 + depth[parent])
        elif parent in on_path:
            cycle = True
            best[node] = max(best[node], 1)
        elif limit is not None and len(stack) > limit:
            ancestors.discard(start)
            return ancestors, len(stack), cycle
        else:
            on_path.add(parent)
            best[parent] = 0
            stack.append((parent, iter(parents.get(parent, ()))))

    ancestors.discard(start)
    return ancestors, depth[start], cycle


class RegionScopeResolver:
    """Computes whether a user may act in a region at a point in time."""

    def __init__(self, max_depth: int | None = None):
        self.max_depth = settings.MAX_REGION_INHERITANCE_DEPTH if max_depth is None else max_depth

    @staticmethod
    def effective_regions(
        user: User,
        now: datetime,
        tokens: Iterable[TemporaryAccessToken] = (),
    ) -> tuple[set[str], set[str]]:
        """Return (regions from roles and the user record, regions from tokens)."""
        role_regions = set(user.allowed_regions)
        for assignment in active_assignments(user, now):
            role_regions |= assignment.allowed_regions
        token_regions: set[str] = set()
        for token in tokens:
            token_regions.update(token.granted_regions)
        return role_regions, token_regions

    def resolve(
        self,
        user: User,
        requested_region: str,
        context: AccessContext,
        *,
        now: datetime,
        regions: Mapping[str, Region],
        tokens: Iterable[TemporaryAccessToken] = (),
    ) -> RegionScopeResult:
        region = regions.get(requested_region)
        if region is None:
            return RegionScopeResult(allowed=False, reason="region_not_found")
        if not region.is_active:
            return RegionScopeResult(allowed=False, reason="region_deactivated")

        policies = ["region_exists_active"]

        parents = _parent_map(regions, context.region_hierarchy)
        ancestors, depth, cycle = walk_ancestors(requested_region, parents, self.max_depth)
        if cycle:
            logger.warning(
                "Circular region hierarchy reached from %s (user=%s)",
                requested_region,
                user.user_id,
            )
            return RegionScopeResult(allowed=False, reason="circular_region_hierarchy_detected")
        declared_depth = context.region_inheritance_depth or 0
        if max(depth, declared_depth) > self.max_depth:
            return RegionScopeResult(
                allowed=False,
                reason=(
                    f"region_inheritance_depth_exceeded: depth "
                    f"{max(depth, declared_depth)} > {self.max_depth}"
                ),
            )
        policies.append("region_hierarchy_validated")

        role_regions, token_regions = self.effective_regions(user, now, tokens)
        effective = role_regions | token_regions

        if WILDCARD_REGION in effective:
            policies.append("wildcard_region_access")
            return RegionScopeResult(
                allowed=True, reason="wildcard_region_access", applied_policies=policies
            )

        if requested_region in effective:
            grant = "multi_region_access" if len(effective) > 1 else "single_region_access"
            policies.append(grant)
            if requested_region not in role_regions:
                policies.append("temporary_region_grant")
            return RegionScopeResult(allowed=True, reason=grant, applied_policies=policies)

        if ancestors & effective:
            policies.append("inherited_region_access")
            return RegionScopeResult(
                allowed=True, reason="inherited_region_access", applied_policies=policies
            )

        roles = {a.role for a in active_assignments(user, now)}
        if roles & _CROSS_REGION_ROLES and context.case_id:
            if CASE_ID_PATTERN.match(context.case_id):
                policies.append("cross_region_override")
                return RegionScopeResult(
                    allowed=True,
                    reason="cross_region_override",
                    applied_policies=policies,
                    requires_mfa=True,
                )
            return RegionScopeResult(
                allowed=False,
                reason="region_access_denied: invalid case id for cross-region override",
                applied_policies=policies,
            )

        return RegionScopeResult(
            allowed=False,
            reason=f"region_access_denied: {requested_region} not in allowed regions",
            applied_policies=policies,
        )


_directory: RegionDirectory | None = None


def get_region_directory() -> RegionDirectory:
    global _directory  # noqa: PLW0603
    if _directory is None:
        _directory = InMemoryRegionDirectory()
    return _directory
