"""
Phase Catalog: phase definitions, service types and phase-set resolution.

Catalog data changes rarely, so it is read into an immutable snapshot and
held by a ``CatalogCache`` owned by whoever built the catalog (the engine
or the API app). A stale snapshot can only defer new phases; it never
corrupts existing tracking rows because those store their own phase set.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ..core.errors import InvalidServiceError
from ..models import ActionType, PhaseDefinition, ServiceType

logger = logging.getLogger(__name__)


# =============================================================================
# SNAPSHOT TYPES
# =============================================================================


@dataclass(frozen=True)
class RequiredActionInfo:
    action_key: str
    description: str
    action_type: ActionType


@dataclass(frozen=True)
class PhaseInfo:
    """Immutable view of a PhaseDefinition."""
    key: str
    name: str
    sort_order: int
    requires_client_action: bool
    description: str | None = None
    icon: str | None = None
    required_actions: tuple[RequiredActionInfo, ...] = ()

    @property
    def action_keys(self) -> tuple[str, ...]:
        return tuple(a.action_key for a in self.required_actions)


@dataclass(frozen=True)
class ServiceInfo:
    code: str
    display_name: str
    default_phase_keys: tuple[str, ...]
    sort_order: int = 0


@dataclass(frozen=True)
class CatalogSnapshot:
    phases: dict[str, PhaseInfo] = field(default_factory=dict)
    services: dict[str, ServiceInfo] = field(default_factory=dict)

    def ordered_phases(self) -> list[PhaseInfo]:
        return sorted(self.phases.values(), key=lambda p: p.sort_order)


# =============================================================================
# CACHE
# =============================================================================


class CatalogCache:
    """Single-entry TTL cache for the catalog snapshot."""

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._snapshot: CatalogSnapshot | None = None
        self._loaded_at: float | None = None

    def get(self) -> CatalogSnapshot | None:
        if self._snapshot is None or self._loaded_at is None:
            return None
        if self._clock() - self._loaded_at >= self._ttl:
            return None
        return self._snapshot

    def put(self, snapshot: CatalogSnapshot) -> None:
        self._snapshot = snapshot
        self._loaded_at = self._clock()

    def invalidate(self) -> None:
        self._snapshot = None
        self._loaded_at = None


# =============================================================================
# CATALOG
# =============================================================================


async def load_catalog_snapshot(session: AsyncSession) -> CatalogSnapshot:
    """Read phases (with their required actions) and active services."""
    phase_rows = await session.execute(
        select(PhaseDefinition).options(selectinload(PhaseDefinition.required_actions))
    )
    phases = {
        p.key: PhaseInfo(
            key=p.key,
            name=p.name,
            sort_order=p.sort_order,
            requires_client_action=p.requires_client_action,
            description=p.description,
            icon=p.icon,
            required_actions=tuple(
                RequiredActionInfo(
                    action_key=a.action_key,
                    description=a.description,
                    action_type=a.action_type,
                )
                for a in p.required_actions
            ),
        )
        for p in phase_rows.scalars().all()
    }

    service_rows = await session.execute(
        select(ServiceType)
        .where(ServiceType.is_active.is_(True))
        .order_by(ServiceType.sort_order.asc())
    )
    services = {
        s.code: ServiceInfo(
            code=s.code,
            display_name=s.display_name,
            default_phase_keys=tuple(s.default_phase_keys or ()),
            sort_order=s.sort_order,
        )
        for s in service_rows.scalars().all()
    }

    return CatalogSnapshot(phases=phases, services=services)


class PhaseCatalog:
    """
    Resolves which phases apply to a project.

    Usage:
        catalog = PhaseCatalog(session_factory, first_phase_key="ONB", last_phase_key="LAUNCH")
        keys = await catalog.resolve_phase_set(["book_cover"])
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        first_phase_key: str = "ONB",
        last_phase_key: str = "LAUNCH",
        cache_ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self.first_phase_key = first_phase_key
        self.last_phase_key = last_phase_key
        self._cache = CatalogCache(cache_ttl_seconds, clock=clock)
        self._load_lock = asyncio.Lock()

    async def snapshot(self) -> CatalogSnapshot:
        cached = self._cache.get()
        if cached is not None:
            return cached

        async with self._load_lock:
            # Another waiter may have refreshed it already
            cached = self._cache.get()
            if cached is not None:
                return cached

            async with self._session_factory() as session:
                snapshot = await load_catalog_snapshot(session)

            self._cache.put(snapshot)
            logger.info(
                f"Loaded phase catalog: {len(snapshot.phases)} phases, "
                f"{len(snapshot.services)} services"
            )
            return snapshot

    def invalidate(self) -> None:
        """Drop the cached snapshot; call after administrative catalog edits."""
        self._cache.invalidate()
        logger.info("Phase catalog cache invalidated")

    async def list_phases(self) -> list[PhaseInfo]:
        return (await self.snapshot()).ordered_phases()

    async def list_services(self) -> list[ServiceInfo]:
        snapshot = await self.snapshot()
        return sorted(snapshot.services.values(), key=lambda s: s.sort_order)

    async def get_phase(self, key: str) -> PhaseInfo | None:
        return (await self.snapshot()).phases.get(key)

    async def resolve_phase_set(self, service_codes: Iterable[str]) -> list[str]:
        """
        Build the ordered ProjectPhaseSet for a list of service codes.

        Union of each service's default phases plus the first and last
        phases, sorted by catalog order. Raises InvalidServiceError for an
        unknown service code or a service that references an unknown phase.
        """
        snapshot = await self.snapshot()
        keys: set[str] = {self.first_phase_key, self.last_phase_key}

        for code in service_codes:
            service = snapshot.services.get(code)
            if service is None:
                raise InvalidServiceError(code)
            keys.update(service.default_phase_keys)

        missing = sorted(k for k in keys if k not in snapshot.phases)
        if missing:
            raise InvalidServiceError(
                ",".join(missing),
                f"Catalog has no phase definition for: {', '.join(missing)}",
            )

        return sorted(keys, key=lambda k: snapshot.phases[k].sort_order)
