"""
Tests for the Phase Tracker - Verifying State Machine Guarantees.

These tests verify:
1. ENROLL: Projects start at the first phase of their resolved set
2. ADVANCE: One step forward, terminal after the last phase, idempotent after
3. MOVE: Operator jumps stay inside the phase set
4. SERVICES: Recomputing the set relocates a project whose phase disappears
5. CONCURRENCY: Racing advances from the same phase apply exactly once
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from portal_workflow.core.errors import (
    InvalidServiceError,
    PhaseNotInSetError,
    ProjectNotFoundError,
)
from portal_workflow.models import ActorType, PhaseHistory, PhaseTracking, Project
from portal_workflow.services.actors import SYSTEM, ClientActor, OperatorActor
from portal_workflow.services.phase_tracking import PhaseTracker, TransitionStatus

BOOK_COVER_PHASES = ["ONB", "IDEA", "DSGN", "REV", "PROD", "PAY", "SIGN", "LAUNCH"]


async def history_count(session: AsyncSession, project_id) -> int:
    result = await session.execute(
        select(func.count()).select_from(PhaseHistory).where(
            PhaseHistory.project_id == project_id
        )
    )
    return result.scalar_one()


# =============================================================================
# TEST: ENROLLMENT
# =============================================================================


class TestStartTracking:
    """Tests for start_tracking."""

    async def test_starts_at_first_phase_of_resolved_set(
        self, session, make_project, catalog, clock
    ):
        project_id = await make_project(enroll=False)
        tracker = PhaseTracker(session, catalog, clock)

        tracking = await tracker.start_tracking(project_id)
        await session.commit()

        assert tracking.current_phase_key == "ONB"
        assert tracking.phase_keys == BOOK_COVER_PHASES
        assert tracking.phase_started_at == clock.now
        assert tracking.is_completed is False
        assert tracking.version == 1

        items, total = await tracker.get_history(project_id)
        assert total == 1
        assert items[0].from_phase_key is None
        assert items[0].to_phase_key == "ONB"
        assert items[0].actor_type == ActorType.SYSTEM

    async def test_is_idempotent(self, session, make_project, catalog, clock):
        project_id = await make_project()
        tracker = PhaseTracker(session, catalog, clock)

        clock.advance(days=1)
        tracking = await tracker.start_tracking(project_id)
        await session.commit()

        assert tracking.phase_started_at == clock.now - timedelta(days=1)
        assert await history_count(session, project_id) == 1

    async def test_unknown_project(self, session, catalog, clock):
        with pytest.raises(ProjectNotFoundError):
            await PhaseTracker(session, catalog, clock).start_tracking(uuid4())

    async def test_unknown_service(self, session, make_project, catalog, clock):
        project_id = await make_project(services=["tattoo_design"], enroll=False)

        with pytest.raises(InvalidServiceError):
            await PhaseTracker(session, catalog, clock).start_tracking(project_id)

    async def test_needs_a_catalog(self, session, make_project):
        project_id = await make_project(enroll=False)

        with pytest.raises(RuntimeError):
            await PhaseTracker(session).start_tracking(project_id)


# =============================================================================
# TEST: ADVANCE
# =============================================================================


class TestAdvance:
    """Tests for advance."""

    async def test_moves_to_next_phase(self, session, make_project, catalog, clock):
        project_id = await make_project()
        clock.advance(hours=3)
        tracker = PhaseTracker(session, catalog, clock)

        result = await tracker.advance(
            project_id, "intake received", ClientActor(user_id=uuid4())
        )
        await session.commit()

        assert result.status == TransitionStatus.ADVANCED
        assert result.changed
        assert result.previous_phase_key == "ONB"
        assert result.new_phase_key == "IDEA"
        assert result.phase_started_at == clock.now

        tracking = await tracker.get_tracking(project_id)
        assert tracking.current_phase_key == "IDEA"
        assert tracking.version == 2

        items, _ = await tracker.get_history(project_id)
        assert (items[0].from_phase_key, items[0].to_phase_key) == ("ONB", "IDEA")
        assert items[0].reason == "intake received"
        assert items[0].actor_type == ActorType.CLIENT

    async def test_last_phase_goes_terminal_once(self, session, make_project, catalog, clock):
        """Scenario: consultation project walks ONB -> LAUNCH -> complete."""
        project_id = await make_project(services=["consultation"])
        tracker = PhaseTracker(session, catalog, clock)

        clock.advance(days=1)
        first = await tracker.advance(project_id, "kickoff done")
        clock.advance(days=1)
        second = await tracker.advance(project_id, "delivered")
        await session.commit()

        assert first.new_phase_key == "LAUNCH"
        assert second.status == TransitionStatus.COMPLETED
        assert second.is_terminal
        assert second.new_phase_key == "LAUNCH"

        tracking = await tracker.get_tracking(project_id)
        assert tracking.is_completed
        assert tracking.completed_at == clock.now

        items, total = await tracker.get_history(project_id)
        assert total == 3
        assert items[0].from_phase_key == "LAUNCH"
        assert items[0].to_phase_key is None
        assert items[0].is_terminal

        # Advancing a terminal project is a no-op, not an error
        clock.advance(days=1)
        again = await tracker.advance(project_id, "double click")
        await session.commit()

        assert again.status == TransitionStatus.ALREADY_COMPLETE
        assert again.already_complete
        assert not again.changed
        assert await history_count(session, project_id) == 3

    async def test_walks_every_phase_in_order(self, session, make_project, catalog, clock):
        project_id = await make_project()
        tracker = PhaseTracker(session, catalog, clock)

        visited = ["ONB"]
        for _ in range(len(BOOK_COVER_PHASES) - 1):
            clock.advance(hours=1)
            result = await tracker.advance(project_id, "next")
            visited.append(result.new_phase_key)
        await session.commit()

        assert visited == BOOK_COVER_PHASES

    async def test_stale_expected_phase_is_superseded(
        self, session, make_project, catalog, clock
    ):
        project_id = await make_project()
        tracker = PhaseTracker(session, catalog, clock)
        await tracker.advance(project_id, "first")

        result = await tracker.advance(project_id, "second", expected_phase_key="ONB")
        await session.commit()

        assert result.status == TransitionStatus.SUPERSEDED
        assert result.new_phase_key == "IDEA"
        assert (await tracker.get_tracking(project_id)).current_phase_key == "IDEA"
        assert await history_count(session, project_id) == 2

    async def test_unenrolled_project(self, session, make_project, catalog, clock):
        project_id = await make_project(enroll=False)

        with pytest.raises(ProjectNotFoundError):
            await PhaseTracker(session, catalog, clock).advance(project_id, "nope")

    async def test_phase_started_at_never_moves_backwards(
        self, session, make_project, catalog, clock
    ):
        project_id = await make_project()
        enrolled_at = clock.now
        clock.advance(minutes=-5)

        result = await PhaseTracker(session, catalog, clock).advance(project_id, "skewed clock")
        await session.commit()

        assert result.phase_started_at == enrolled_at


# =============================================================================
# TEST: OPERATOR MOVES
# =============================================================================


class TestMoveToPhase:
    """Tests for move_to_phase."""

    async def test_jumps_forward(self, session, make_project, catalog, clock):
        project_id = await make_project()
        operator = OperatorActor(user_id=uuid4())
        clock.advance(hours=1)
        tracker = PhaseTracker(session, catalog, clock)

        result = await tracker.move_to_phase(project_id, "REV", "client sent designs", operator)
        await session.commit()

        assert result.status == TransitionStatus.MOVED
        assert result.new_phase_key == "REV"
        items, _ = await tracker.get_history(project_id)
        assert items[0].actor_type == ActorType.OPERATOR
        assert items[0].actor_user_id == operator.user_id

    async def test_rejects_phase_outside_the_set(self, session, make_project, catalog, clock):
        project_id = await make_project(services=["consultation"])

        with pytest.raises(PhaseNotInSetError):
            await PhaseTracker(session, catalog, clock).move_to_phase(
                project_id, "REV", "nope", SYSTEM
            )

    async def test_same_phase_is_a_no_op(self, session, make_project, catalog, clock):
        project_id = await make_project()

        result = await PhaseTracker(session, catalog, clock).move_to_phase(
            project_id, "ONB", "again", SYSTEM
        )
        await session.commit()

        assert result.status == TransitionStatus.SUPERSEDED
        assert await history_count(session, project_id) == 1

    async def test_reopens_a_completed_project(self, session, make_project, catalog, clock):
        project_id = await make_project(services=["consultation"])
        tracker = PhaseTracker(session, catalog, clock)
        await tracker.advance(project_id, "step")
        await tracker.advance(project_id, "done")

        result = await tracker.move_to_phase(project_id, "LAUNCH", "client found a typo", SYSTEM)
        await session.commit()

        assert result.status == TransitionStatus.MOVED
        tracking = await tracker.get_tracking(project_id)
        assert tracking.is_completed is False
        assert tracking.completed_at is None
        assert tracking.current_phase_key == "LAUNCH"


# =============================================================================
# TEST: SERVICE CHANGES
# =============================================================================


class TestUpdateServices:
    """Tests for update_services."""

    async def test_current_phase_kept_when_still_in_set(
        self, session, make_project, catalog, clock, move_to
    ):
        project_id = await make_project()
        await move_to(project_id, "REV")
        tracker = PhaseTracker(session, catalog, clock)

        tracking = await tracker.update_services(project_id, ["logo_brand"], SYSTEM)
        await session.commit()

        assert tracking.current_phase_key == "REV"
        assert tracking.phase_keys == ["ONB", "IDEA", "DSGN", "REV", "PAY", "SIGN", "LAUNCH"]
        assert await history_count(session, project_id) == 2

        project = await session.get(Project, project_id)
        assert project.service_codes == ["logo_brand"]

    async def test_relocates_to_next_remaining_phase(
        self, session, make_project, catalog, clock, move_to
    ):
        project_id = await make_project()
        await move_to(project_id, "PROD")
        clock.advance(hours=1)
        tracker = PhaseTracker(session, catalog, clock)

        tracking = await tracker.update_services(project_id, ["logo_brand"], SYSTEM)
        await session.commit()

        assert tracking.current_phase_key == "PAY"
        assert tracking.phase_started_at == clock.now
        items, _ = await tracker.get_history(project_id)
        assert (items[0].from_phase_key, items[0].to_phase_key) == ("PROD", "PAY")
        assert items[0].reason == "services changed"

    async def test_relocates_to_last_phase_when_nothing_follows(
        self, session, make_project, catalog, clock, move_to
    ):
        project_id = await make_project()
        await move_to(project_id, "SIGN")

        tracking = await PhaseTracker(session, catalog, clock).update_services(
            project_id, ["print_production"], SYSTEM
        )
        await session.commit()

        assert tracking.phase_keys == ["ONB", "PROD", "PAY", "LAUNCH"]
        assert tracking.current_phase_key == "LAUNCH"

    async def test_unenrolled_project_only_updates_services(
        self, session, make_project, catalog, clock
    ):
        project_id = await make_project(enroll=False)

        tracking = await PhaseTracker(session, catalog, clock).update_services(
            project_id, ["web_design"], SYSTEM
        )
        await session.commit()

        assert tracking is None
        assert (await session.get(Project, project_id)).service_codes == ["web_design"]

    async def test_invalid_service_changes_nothing(
        self, session, make_project, catalog, clock
    ):
        project_id = await make_project()

        with pytest.raises(InvalidServiceError):
            await PhaseTracker(session, catalog, clock).update_services(
                project_id, ["tattoo_design"], SYSTEM
            )
        await session.rollback()

        tracking = await PhaseTracker(session).get_tracking(project_id)
        assert tracking.phase_keys == BOOK_COVER_PHASES
        assert tracking.version == 1


# =============================================================================
# TEST: CONCURRENCY
# =============================================================================


class TestConcurrentAdvance:
    """Two writers racing from the same phase."""

    async def test_exactly_one_advance_applies(
        self, session_factory, make_project, catalog, clock
    ):
        project_id = await make_project()

        async def attempt(reason: str):
            async with session_factory() as s:
                result = await PhaseTracker(s, catalog, clock).advance(
                    project_id, reason, expected_phase_key="ONB"
                )
                await s.commit()
                return result

        results = await asyncio.gather(attempt("payment webhook"), attempt("automation tick"))

        statuses = sorted(r.status.value for r in results)
        assert statuses == ["advanced", "superseded"]

        async with session_factory() as s:
            tracking = (await s.execute(
                select(PhaseTracking).where(PhaseTracking.project_id == project_id)
            )).scalar_one()
            assert tracking.current_phase_key == "IDEA"
            assert tracking.version == 2

            rows = (await s.execute(
                select(PhaseHistory).where(
                    PhaseHistory.project_id == project_id,
                    PhaseHistory.from_phase_key == "ONB",
                )
            )).scalars().all()
            assert len(rows) == 1


# =============================================================================
# TEST: QUERIES
# =============================================================================


class TestQueries:
    async def test_history_is_newest_first_and_paginated(
        self, session, make_project, catalog, clock
    ):
        project_id = await make_project()
        tracker = PhaseTracker(session, catalog, clock)
        for _ in range(3):
            clock.advance(hours=1)
            await tracker.advance(project_id, "next")
        await session.commit()

        page, total = await tracker.get_history(project_id, limit=2, offset=0)
        rest, _ = await tracker.get_history(project_id, limit=2, offset=2)

        assert total == 4
        assert [h.to_phase_key for h in page] == ["REV", "DSGN"]
        assert [h.to_phase_key for h in rest] == ["IDEA", "ONB"]

    async def test_list_active_skips_completed_and_inactive(
        self, session, make_project, catalog, clock
    ):
        active = await make_project(name="active")
        done = await make_project(services=["consultation"], name="done")
        paused = await make_project(name="paused")

        tracker = PhaseTracker(session, catalog, clock)
        await tracker.advance(done, "step")
        await tracker.advance(done, "finish")
        (await session.get(Project, paused)).is_active = False
        await session.commit()

        ids = [project.id for _, project in await tracker.list_active()]
        assert ids == [active]
