"""
Requirement Gate: has a project completed everything its phase demands?

The gate is a pure read over RequiredAction + ActionStatus. Forms, payments
and signatures each write their own ActionStatus rows; the gate never knows
which subsystem produced a completion, it only counts them.

All configured actions of a phase are mandatory. A phase without required
actions is trivially satisfied.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ActionStatus, ActionType, RequiredAction


@dataclass(frozen=True)
class MissingRequirement:
    """One unmet action, shaped for UI and API consumers."""
    action_key: str
    description: str
    action_type: ActionType

    @property
    def message(self) -> str:
        return f"missing requirement {self.action_key}"

    def to_dict(self) -> dict:
        return {
            "action_key": self.action_key,
            "description": self.description,
            "action_type": self.action_type.value,
            "message": self.message,
        }


@dataclass
class GateResult:
    project_id: UUID
    phase_key: str
    required: list[str] = field(default_factory=list)
    missing: list[MissingRequirement] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return not self.missing

    @property
    def pending_action_keys(self) -> list[str]:
        return [m.action_key for m in self.missing]

    @property
    def reasons(self) -> list[str]:
        return [m.message for m in self.missing]


@dataclass(frozen=True)
class GateQuery:
    project_id: UUID
    phase_key: str
    # Only completions recorded at or after this instant count
    completed_since: datetime | None = None


class RequirementGate:
    """Read-only gating checks. Performs no writes."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def is_satisfied(
        self,
        project_id: UUID,
        phase_key: str,
        completed_since: datetime | None = None,
    ) -> bool:
        return not await self.pending_actions(project_id, phase_key, completed_since)

    async def pending_actions(
        self,
        project_id: UUID,
        phase_key: str,
        completed_since: datetime | None = None,
    ) -> list[str]:
        result = await self.evaluate(project_id, phase_key, completed_since)
        return result.pending_action_keys

    async def evaluate(
        self,
        project_id: UUID,
        phase_key: str,
        completed_since: datetime | None = None,
    ) -> GateResult:
        results = await self.evaluate_many(
            [GateQuery(project_id, phase_key, completed_since)]
        )
        return results[project_id]

    async def evaluate_many(self, queries: Iterable[GateQuery]) -> dict[UUID, GateResult]:
        """
        Evaluate many (project, phase) pairs with two queries total.

        Used by the automation sweep so gating costs stay flat per tick.
        One query per project id; a later query for the same project wins.
        """
        queries = list(queries)
        if not queries:
            return {}

        phase_keys = {q.phase_key for q in queries}
        project_ids = {q.project_id for q in queries}

        actions_result = await self._session.execute(
            select(RequiredAction)
            .where(RequiredAction.phase_key.in_(phase_keys))
            .order_by(RequiredAction.phase_key, RequiredAction.sort_order)
        )
        actions_by_phase: dict[str, list[RequiredAction]] = {}
        for action in actions_result.scalars().all():
            actions_by_phase.setdefault(action.phase_key, []).append(action)

        action_ids = [a.id for actions in actions_by_phase.values() for a in actions]
        completions: dict[tuple[UUID, UUID], datetime | None] = {}
        if action_ids:
            status_result = await self._session.execute(
                select(
                    ActionStatus.project_id,
                    ActionStatus.action_id,
                    ActionStatus.completed_at,
                ).where(
                    ActionStatus.project_id.in_(project_ids),
                    ActionStatus.action_id.in_(action_ids),
                    ActionStatus.is_completed.is_(True),
                )
            )
            for project_id, action_id, completed_at in status_result.all():
                completions[(project_id, action_id)] = completed_at

        results: dict[UUID, GateResult] = {}
        for q in queries:
            actions = actions_by_phase.get(q.phase_key, [])
            missing = [
                MissingRequirement(
                    action_key=a.action_key,
                    description=a.description,
                    action_type=a.action_type,
                )
                for a in actions
                if not _counts_as_complete(completions, q, a.id)
            ]
            results[q.project_id] = GateResult(
                project_id=q.project_id,
                phase_key=q.phase_key,
                required=[a.action_key for a in actions],
                missing=missing,
            )
        return results

    async def pending_actions_for_projects(
        self,
        queries: Iterable[GateQuery],
    ) -> dict[UUID, list[str]]:
        results = await self.evaluate_many(queries)
        return {pid: r.pending_action_keys for pid, r in results.items()}


def _counts_as_complete(
    completions: dict[tuple[UUID, UUID], datetime | None],
    query: GateQuery,
    action_id: UUID,
) -> bool:
    key = (query.project_id, action_id)
    if key not in completions:
        return False
    if query.completed_since is None:
        return True
    completed_at = completions[key]
    return completed_at is not None and completed_at >= query.completed_since
