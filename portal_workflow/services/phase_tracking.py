"""
Phase Tracking: the per-project phase state machine.

States are the phase keys of the project's ProjectPhaseSet plus an implicit
terminal state (``is_completed``). Transitions:

- advance: current phase -> next phase in the set, or last phase -> terminal
- move_to_phase: operator jump to any phase of the set
- update_services: recompute the set, relocating the project if needed

Transitions are unconditional: checking the Requirement Gate first is the
caller's job. Every transition writes a PhaseHistory row.

Concurrency: each transition is an ``UPDATE ... WHERE version = :seen``.
The row is also read ``FOR UPDATE`` (a no-op on SQLite). If two writers race
from the same source phase, exactly one UPDATE matches; the loser observes
the new state and reports SUPERSEDED without writing anything.

This service flushes but never commits; the caller owns the transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utc_now
from ..core.errors import ConcurrentUpdateError, PhaseNotInSetError, ProjectNotFoundError
from ..models import PhaseHistory, PhaseTracking, Project
from .actors import SYSTEM, Actor, actor_type, actor_user_id
from .catalog import PhaseCatalog

logger = logging.getLogger(__name__)


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


class TransitionStatus(str, Enum):
    ADVANCED = "advanced"                  # moved to the next phase
    COMPLETED = "completed"                # last phase -> terminal
    MOVED = "moved"                        # operator jump
    ALREADY_COMPLETE = "already_complete"  # terminal; idempotent no-op
    SUPERSEDED = "superseded"              # lost a race or stale expectation; no-op


@dataclass
class AdvanceResult:
    project_id: UUID
    status: TransitionStatus
    previous_phase_key: str
    new_phase_key: str
    is_terminal: bool
    phase_started_at: datetime

    @property
    def changed(self) -> bool:
        return self.status in (
            TransitionStatus.ADVANCED,
            TransitionStatus.COMPLETED,
            TransitionStatus.MOVED,
        )

    @property
    def already_complete(self) -> bool:
        return self.status == TransitionStatus.ALREADY_COMPLETE

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": str(self.project_id),
            "status": self.status.value,
            "previous_phase_key": self.previous_phase_key,
            "new_phase_key": self.new_phase_key,
            "is_terminal": self.is_terminal,
            "phase_started_at": self.phase_started_at.isoformat(),
        }


# =============================================================================
# PHASE TRACKER
# =============================================================================


class PhaseTracker:
    """
    Session-scoped phase state machine.

    Guarantees:
    1. current_phase_key is always a member of phase_keys
    2. phase_started_at never moves backwards
    3. A terminal project is never advanced again
    """

    def __init__(
        self,
        session: AsyncSession,
        catalog: PhaseCatalog | None = None,
        clock: Clock = utc_now,
    ):
        self._session = session
        self._catalog = catalog
        self._clock = clock

    # =========================================================================
    # ENROLLMENT
    # =========================================================================

    async def start_tracking(
        self,
        project_id: UUID,
        actor: Actor = SYSTEM,
    ) -> PhaseTracking:
        """
        Enter a project into the workflow at the first phase of its set.

        Idempotent: an existing tracking row is returned unchanged.
        """
        existing = await self._get_tracking(project_id)
        if existing is not None:
            return existing

        project = await self._get_project_or_raise(project_id)
        phase_keys = await self._require_catalog().resolve_phase_set(project.service_codes)
        now = self._clock()

        tracking = PhaseTracking(
            project_id=project_id,
            current_phase_key=phase_keys[0],
            phase_keys=phase_keys,
            phase_started_at=now,
            is_completed=False,
            completed_at=None,
            version=1,
        )
        self._session.add(tracking)
        self._record_history(
            project_id=project_id,
            from_phase_key=None,
            to_phase_key=phase_keys[0],
            reason="enrolled in workflow",
            actor=actor,
            at=now,
        )
        await self._session.flush()

        logger.info(f"Project {project_id} enrolled at {phase_keys[0]} ({'→'.join(phase_keys)})")
        return tracking

    # =========================================================================
    # ADVANCE
    # =========================================================================

    async def advance(
        self,
        project_id: UUID,
        reason: str,
        actor: Actor = SYSTEM,
        expected_phase_key: str | None = None,
    ) -> AdvanceResult:
        """
        Move the project to the next phase, or to terminal from the last one.

        Args:
            project_id: Project to advance
            reason: Free-text reason stored in the history row
            actor: Who is advancing
            expected_phase_key: Source phase the caller evaluated; if the
                project is elsewhere by now the call is a no-op

        Raises:
            ProjectNotFoundError: no tracking row for the project
        """
        tracking = await self._get_tracking_or_raise(project_id, for_update=True)
        source = tracking.current_phase_key

        if tracking.is_completed:
            return self._result(tracking, TransitionStatus.ALREADY_COMPLETE, source)

        if expected_phase_key is not None and source != expected_phase_key:
            return self._result(tracking, TransitionStatus.SUPERSEDED, source)

        keys = list(tracking.phase_keys)
        index = keys.index(source)
        now = self._clock()

        if index == len(keys) - 1:
            values: dict[str, Any] = {"is_completed": True, "completed_at": now}
            target = None
            status = TransitionStatus.COMPLETED
        else:
            target = keys[index + 1]
            values = {
                "current_phase_key": target,
                "phase_started_at": max(now, tracking.phase_started_at),
            }
            status = TransitionStatus.ADVANCED

        if not await self._compare_and_set(tracking, values):
            return await self._lost_race(tracking, source)

        self._record_history(
            project_id=project_id,
            from_phase_key=source,
            to_phase_key=target,
            reason=reason,
            actor=actor,
            at=now,
            is_terminal=target is None,
        )
        await self._session.flush()

        logger.info(
            f"Project {project_id}: {source} -> {target or 'COMPLETE'} ({reason})"
        )
        return self._result(tracking, status, source)

    # =========================================================================
    # OPERATOR MOVES
    # =========================================================================

    async def move_to_phase(
        self,
        project_id: UUID,
        phase_key: str,
        reason: str,
        actor: Actor,
    ) -> AdvanceResult:
        """
        Jump directly to a phase of the project's set.

        Moving a completed project reopens it. Moving to the current phase of
        an open project is a no-op reported as SUPERSEDED.
        """
        tracking = await self._get_tracking_or_raise(project_id, for_update=True)
        source = tracking.current_phase_key

        if phase_key not in tracking.phase_keys:
            raise PhaseNotInSetError(project_id, phase_key)

        if phase_key == source and not tracking.is_completed:
            return self._result(tracking, TransitionStatus.SUPERSEDED, source)

        now = self._clock()
        values = {
            "current_phase_key": phase_key,
            "phase_started_at": max(now, tracking.phase_started_at),
            "is_completed": False,
            "completed_at": None,
        }
        if not await self._compare_and_set(tracking, values):
            return await self._lost_race(tracking, source)

        self._record_history(
            project_id=project_id,
            from_phase_key=source,
            to_phase_key=phase_key,
            reason=reason,
            actor=actor,
            at=now,
        )
        await self._session.flush()

        return self._result(tracking, TransitionStatus.MOVED, source)

    async def update_services(
        self,
        project_id: UUID,
        service_codes: list[str],
        actor: Actor,
    ) -> PhaseTracking | None:
        """
        Change a project's services and recompute its phase set.

        If the current phase drops out of the new set, the project moves to
        the earliest remaining phase ordered at or after it (else the last
        phase). Returns the tracking row, or None if not yet enrolled.
        """
        project = await self._get_project_or_raise(project_id)
        catalog = self._require_catalog()
        new_keys = await catalog.resolve_phase_set(service_codes)
        project.service_codes = list(service_codes)

        tracking = await self._get_tracking(project_id, for_update=True)
        if tracking is None:
            await self._session.flush()
            return None

        source = tracking.current_phase_key
        values: dict[str, Any] = {"phase_keys": new_keys}
        relocated_to = None

        if source not in new_keys:
            snapshot = await catalog.snapshot()
            source_order = snapshot.phases[source].sort_order if source in snapshot.phases else -1
            relocated_to = next(
                (k for k in new_keys if snapshot.phases[k].sort_order >= source_order),
                new_keys[-1],
            )
            values["current_phase_key"] = relocated_to
            if not tracking.is_completed:
                values["phase_started_at"] = max(self._clock(), tracking.phase_started_at)

        if not await self._compare_and_set(tracking, values):
            raise ConcurrentUpdateError(project_id)

        if relocated_to is not None:
            self._record_history(
                project_id=project_id,
                from_phase_key=source,
                to_phase_key=relocated_to,
                reason="services changed",
                actor=actor,
                at=self._clock(),
            )
        await self._session.flush()
        return tracking

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_tracking(self, project_id: UUID) -> PhaseTracking:
        return await self._get_tracking_or_raise(project_id)

    async def get_history(
        self,
        project_id: UUID,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[PhaseHistory], int]:
        await self._get_tracking_or_raise(project_id)

        result = await self._session.execute(
            select(PhaseHistory)
            .where(PhaseHistory.project_id == project_id)
            .order_by(PhaseHistory.created_at.desc(), PhaseHistory.id)
            .limit(limit)
            .offset(offset)
        )
        count_result = await self._session.execute(
            select(func.count()).select_from(PhaseHistory).where(
                PhaseHistory.project_id == project_id
            )
        )
        return list(result.scalars().all()), count_result.scalar_one()

    async def list_active(self) -> Sequence[tuple[PhaseTracking, Project]]:
        """All non-terminal trackings of active projects."""
        result = await self._session.execute(
            select(PhaseTracking, Project)
            .join(Project, PhaseTracking.project_id == Project.id)
            .where(
                PhaseTracking.is_completed.is_(False),
                Project.is_active.is_(True),
            )
            .order_by(PhaseTracking.phase_started_at.asc())
        )
        return [(t, p) for t, p in result.all()]

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    def _require_catalog(self) -> PhaseCatalog:
        if self._catalog is None:
            raise RuntimeError("PhaseTracker needs a PhaseCatalog for this operation")
        return self._catalog

    async def _get_project_or_raise(self, project_id: UUID) -> Project:
        result = await self._session.execute(select(Project).where(Project.id == project_id))
        project = result.scalar_one_or_none()
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def _get_tracking(
        self,
        project_id: UUID,
        for_update: bool = False,
    ) -> PhaseTracking | None:
        query = select(PhaseTracking).where(PhaseTracking.project_id == project_id)
        if for_update:
            query = query.with_for_update()
        # Always read fresh state; another session may have written since
        query = query.execution_options(populate_existing=True)
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def _get_tracking_or_raise(
        self,
        project_id: UUID,
        for_update: bool = False,
    ) -> PhaseTracking:
        tracking = await self._get_tracking(project_id, for_update=for_update)
        if tracking is None:
            raise ProjectNotFoundError(project_id)
        return tracking

    async def _compare_and_set(self, tracking: PhaseTracking, values: dict[str, Any]) -> bool:
        """Apply values only if nobody bumped the version since we read it."""
        seen_version = tracking.version
        result = await self._session.execute(
            update(PhaseTracking)
            .where(
                PhaseTracking.id == tracking.id,
                PhaseTracking.version == seen_version,
            )
            .values(**values, version=seen_version + 1, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        await self._session.refresh(tracking)
        return result.rowcount == 1

    async def _lost_race(self, tracking: PhaseTracking, source: str) -> AdvanceResult:
        logger.info(
            f"Project {tracking.project_id}: concurrent transition from {source} "
            f"already applied, now at {tracking.current_phase_key}"
        )
        status = (
            TransitionStatus.ALREADY_COMPLETE
            if tracking.is_completed
            else TransitionStatus.SUPERSEDED
        )
        return self._result(tracking, status, source)

    def _result(
        self,
        tracking: PhaseTracking,
        status: TransitionStatus,
        source: str,
    ) -> AdvanceResult:
        return AdvanceResult(
            project_id=tracking.project_id,
            status=status,
            previous_phase_key=source,
            new_phase_key=tracking.current_phase_key,
            is_terminal=tracking.is_completed,
            phase_started_at=tracking.phase_started_at,
        )

    def _record_history(
        self,
        project_id: UUID,
        from_phase_key: str | None,
        to_phase_key: str | None,
        reason: str | None,
        actor: Actor,
        at: datetime,
        is_terminal: bool = False,
    ) -> None:
        """Append a history entry; part of the caller's transaction."""
        self._session.add(
            PhaseHistory(
                project_id=project_id,
                from_phase_key=from_phase_key,
                to_phase_key=to_phase_key,
                is_terminal=is_terminal,
                reason=reason,
                actor_type=actor_type(actor),
                actor_user_id=actor_user_id(actor),
                created_at=at,
            )
        )
