"""
Automation Engine: periodic rule evaluation over all active projects.

Each tick makes one sweep over non-terminal projects and applies four rule
categories:

1. Auto-advance: the phase requires client action, the Requirement Gate is
   satisfied, and the matching rule enables auto-advance
2. Stuck detection: time in phase exceeds the rule (or default) threshold
3. External completion: like auto-advance, but only completions recorded
   after the phase started count
4. Pending-action reminders: unmet actions older than a shorter threshold

Stuck and reminder notices are deduplicated per (kind, project, phase)
within a cool-down window.

The engine is also the entry point for direct ``advance`` calls from
collaborators (payment webhook, operator API). Those and the tick share one
path: per-project lock, version-checked write, commit, then dispatch.
"""

import asyncio
import logging
import time
import weakref
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.clock import Clock, utc_now
from ..core.config import Settings
from ..core.errors import TransientStoreError
from ..models import EventKind, Project, RuleType
from .actors import SYSTEM, Actor, describe_actor
from .catalog import CatalogSnapshot, PhaseCatalog
from .dedupe import DedupeStore, dedupe_key
from .notification_dispatcher import (
    EventPublisher,
    NotificationDispatcher,
    Recipient,
    WorkflowEvent,
)
from .phase_tracking import AdvanceResult, PhaseTracker
from .requirement_gate import GateQuery, GateResult, RequirementGate
from .rules import Rule, RuleSet, load_rules

logger = logging.getLogger(__name__)

AUTO_ADVANCE_REASON = "automated: requirements met"
EXTERNAL_COMPLETION_REASON = "automated: external completion received"

TRANSIENT_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.TimeoutError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class AutomationConfig:
    """Configuration for automation engine behavior."""

    # Seconds between ticks
    tick_seconds: float = 60.0

    # Projects evaluated concurrently within one tick
    max_concurrency: int = 8

    # Upper bound on one project's evaluation, and on a direct advance
    project_timeout_seconds: float = 10.0

    # Days in phase before a project is considered stuck
    stuck_after_days: int = 7

    # Minimum days between stuck notices for the same project and phase
    stuck_cooldown_days: int = 3

    # Days in phase before unmet actions trigger a reminder
    reminder_after_days: int = 3

    # Minimum days between reminders for the same project and phase
    reminder_cooldown_days: int = 2

    # Base URL used for portal links in notifications
    frontend_url: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "AutomationConfig":
        return cls(
            tick_seconds=settings.automation_tick_seconds,
            max_concurrency=settings.automation_max_concurrency,
            project_timeout_seconds=settings.automation_project_timeout_seconds,
            stuck_after_days=settings.stuck_after_days,
            stuck_cooldown_days=settings.stuck_cooldown_days,
            reminder_after_days=settings.reminder_after_days,
            reminder_cooldown_days=settings.reminder_cooldown_days,
            frontend_url=settings.frontend_url,
        )


DEFAULT_CONFIG = AutomationConfig()


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass
class ProjectState:
    """What one sweep knows about a project before evaluating it."""
    project_id: UUID
    project_name: str
    recipient: Recipient
    current_phase_key: str
    phase_keys: list[str]
    phase_started_at: datetime
    rule: Rule | None
    # Every recorded completion counts
    gate: GateResult
    # Completions the transition rule accepts
    advance_gate: GateResult

    @property
    def is_last_phase(self) -> bool:
        return self.current_phase_key == self.phase_keys[-1]


@dataclass
class TickReport:
    """Summary of one sweep."""
    started_at: datetime
    completed_at: datetime | None = None
    projects_evaluated: int = 0
    advanced: int = 0
    stuck_notices: int = 0
    reminders: int = 0
    skipped_by_dedupe: int = 0
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def failures(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "projects_evaluated": self.projects_evaluated,
            "advanced": self.advanced,
            "stuck_notices": self.stuck_notices,
            "reminders": self.reminders,
            "skipped_by_dedupe": self.skipped_by_dedupe,
            "failures": self.failures,
            "errors": self.errors,
            "duration_seconds": self.duration_seconds,
        }


# =============================================================================
# AUTOMATION ENGINE
# =============================================================================


class AutomationEngine:
    """
    Owns the rule set, the catalog handle and the dispatcher.

    Usage:
        engine = AutomationEngine(session_factory, OutboxDispatcher(session_factory))
        await engine.start()
        report = await engine.run_tick()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher,
        catalog: PhaseCatalog | None = None,
        config: AutomationConfig = DEFAULT_CONFIG,
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self._catalog = catalog or PhaseCatalog(session_factory)
        self._config = config
        self._clock = clock
        self._publisher = EventPublisher(dispatcher, frontend_url=config.frontend_url)
        self._rules = RuleSet()
        self._rules_loaded = False
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def config(self) -> AutomationConfig:
        return self._config

    @property
    def catalog(self) -> PhaseCatalog:
        return self._catalog

    @property
    def rules(self) -> RuleSet:
        return self._rules

    async def start(self) -> None:
        await self.reload_rules()

    async def get_rules(self) -> RuleSet:
        """Loaded rules, reading them on first use."""
        if not self._rules_loaded:
            await self.reload_rules()
        return self._rules

    async def reload_rules(self) -> RuleSet:
        async with self._session_factory() as session:
            self._rules = await load_rules(session)
        self._rules_loaded = True
        logger.info(f"Loaded {len(self._rules)} automation rules")
        return self._rules

    # =========================================================================
    # DIRECT TRANSITIONS
    # =========================================================================

    async def advance(
        self,
        project_id: UUID,
        reason: str,
        actor: Actor = SYSTEM,
        expected_phase_key: str | None = None,
    ) -> AdvanceResult:
        """
        Advance a project and notify its client.

        Safe to call concurrently with the tick and with other callers: at
        most one call succeeds per source phase. Store timeouts and
        connectivity failures raise TransientStoreError.

        Raises:
            ProjectNotFoundError: unknown project
            TransientStoreError: retryable database failure
        """
        return await self._transition(
            project_id,
            lambda tracker: tracker.advance(
                project_id, reason, actor, expected_phase_key=expected_phase_key
            ),
            reason,
            actor,
        )

    async def move_to_phase(
        self,
        project_id: UUID,
        phase_key: str,
        reason: str,
        actor: Actor,
    ) -> AdvanceResult:
        """Operator jump to any phase of the project's set; notifies like advance."""
        return await self._transition(
            project_id,
            lambda tracker: tracker.move_to_phase(project_id, phase_key, reason, actor),
            reason,
            actor,
        )

    async def _transition(
        self,
        project_id: UUID,
        apply: Callable[[PhaseTracker], Awaitable[AdvanceResult]],
        reason: str,
        actor: Actor,
    ) -> AdvanceResult:
        try:
            result, project = await asyncio.wait_for(
                self._apply_and_commit(project_id, apply),
                timeout=self._config.project_timeout_seconds,
            )
        except TRANSIENT_ERRORS as e:
            raise TransientStoreError(f"Could not update project {project_id}: {e}") from e

        if result.changed:
            await self._publish_advanced(result, project, reason, actor)
        return result

    async def _apply_and_commit(
        self,
        project_id: UUID,
        apply: Callable[[PhaseTracker], Awaitable[AdvanceResult]],
    ) -> tuple[AdvanceResult, Project | None]:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock

        async with lock:
            async with self._session_factory() as session:
                try:
                    result = await apply(PhaseTracker(session, self._catalog, self._clock))
                    project = await session.get(Project, project_id)
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        return result, project

    async def _publish_advanced(
        self,
        result: AdvanceResult,
        project: Project | None,
        reason: str,
        actor: Actor,
    ) -> None:
        if project is None:
            return
        snapshot = await self._catalog.snapshot()
        phase = snapshot.phases.get(result.new_phase_key)
        await self._publisher.publish(
            WorkflowEvent(
                project_id=result.project_id,
                kind=EventKind.ADVANCED,
                phase_key=result.new_phase_key,
                payload={
                    "project_name": project.name,
                    "phase_name": phase.name if phase else result.new_phase_key,
                    "phase_icon": phase.icon if phase else None,
                    "previous_phase_key": result.previous_phase_key,
                    "is_terminal": result.is_terminal,
                    "reason": reason,
                    "actor": describe_actor(actor),
                },
                recipient=_recipient(project),
            )
        )

    # =========================================================================
    # TICK
    # =========================================================================

    async def run_tick(self) -> TickReport:
        """
        Evaluate every active project once.

        Never raises for a single project's failure; those are logged and
        listed in the report, and the project is simply seen again next tick.
        """
        started = time.monotonic()
        report = TickReport(started_at=self._clock())

        await self.get_rules()
        snapshot = await self._catalog.snapshot()
        states = await self._load_states()
        report.projects_evaluated = len(states)

        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def evaluate(state: ProjectState) -> None:
            async with semaphore:
                try:
                    await asyncio.wait_for(
                        self._evaluate_project(state, snapshot, report),
                        timeout=self._config.project_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    message = f"{state.project_id}: evaluation timed out"
                    report.errors.append(message)
                    logger.error(f"Automation skipped project {message}")
                except Exception as e:
                    report.errors.append(f"{state.project_id}: {e}")
                    logger.error(
                        f"Automation failed for project {state.project_id}: {e}",
                        exc_info=True,
                    )

        await asyncio.gather(*(evaluate(s) for s in states))

        report.completed_at = self._clock()
        report.duration_seconds = time.monotonic() - started
        logger.info(
            f"Automation tick: {report.projects_evaluated} evaluated, "
            f"{report.advanced} advanced, {report.stuck_notices} stuck, "
            f"{report.reminders} reminders, {report.skipped_by_dedupe} deduped, "
            f"{report.failures} failed in {report.duration_seconds:.2f}s"
        )
        return report

    async def _load_states(self) -> list[ProjectState]:
        """One query for trackings and a fixed number for gating, regardless of rule count."""
        async with self._session_factory() as session:
            tracker = PhaseTracker(session, self._catalog, self._clock)
            active = await tracker.list_active()

            pending: list[tuple[Any, Project, Rule | None]] = []
            queries: list[GateQuery] = []
            since_queries: list[GateQuery] = []
            for tracking, project in active:
                keys = list(tracking.phase_keys)
                if tracking.current_phase_key not in keys:
                    logger.error(
                        f"Project {project.id} is at {tracking.current_phase_key}, "
                        f"outside its phase set {keys}; skipping"
                    )
                    continue
                index = keys.index(tracking.current_phase_key)
                next_key = keys[index + 1] if index + 1 < len(keys) else None
                rule = self._rules.match(tracking.current_phase_key, next_key) if next_key else None
                queries.append(GateQuery(project.id, tracking.current_phase_key))
                if rule is not None and rule.uses_external_completion:
                    since_queries.append(GateQuery(
                        project.id, tracking.current_phase_key, tracking.phase_started_at
                    ))
                pending.append((tracking, project, rule))

            gate = RequirementGate(session)
            gates = await gate.evaluate_many(queries)
            since_gates = await gate.evaluate_many(since_queries) if since_queries else {}

        return [
            ProjectState(
                project_id=project.id,
                project_name=project.name,
                recipient=_recipient(project),
                current_phase_key=tracking.current_phase_key,
                phase_keys=list(tracking.phase_keys),
                phase_started_at=tracking.phase_started_at,
                rule=rule,
                gate=gates[project.id],
                advance_gate=since_gates.get(project.id, gates[project.id]),
            )
            for tracking, project, rule in pending
        ]

    async def _evaluate_project(
        self,
        state: ProjectState,
        snapshot: CatalogSnapshot,
        report: TickReport,
    ) -> None:
        phase = snapshot.phases.get(state.current_phase_key)
        if phase is None:
            raise LookupError(f"phase {state.current_phase_key} missing from catalog")

        # Rules 1 and 3: advance when the gate opens
        if self._should_auto_advance(state, phase.requires_client_action):
            reason = (
                EXTERNAL_COMPLETION_REASON
                if state.rule is not None and state.rule.uses_external_completion
                else AUTO_ADVANCE_REASON
            )
            result = await self.advance(
                state.project_id,
                reason,
                SYSTEM,
                expected_phase_key=state.current_phase_key,
            )
            if result.changed:
                report.advanced += 1
            return

        now = self._clock()
        time_in_phase = now - state.phase_started_at
        payload = {
            "project_name": state.project_name,
            "phase_name": phase.name,
            "days_in_phase": time_in_phase.days,
        }

        async with self._session_factory() as session:
            # Rule 2: stuck
            stuck_days = self._threshold(state.rule, "stuck_after_days")
            if not state.is_last_phase and time_in_phase > timedelta(days=stuck_days):
                sent = await self._notify_once(
                    session,
                    WorkflowEvent(
                        project_id=state.project_id,
                        kind=EventKind.STUCK,
                        phase_key=state.current_phase_key,
                        payload={**payload, "threshold_days": stuck_days},
                        recipient=state.recipient,
                    ),
                    now,
                    timedelta(days=self._config.stuck_cooldown_days),
                    report,
                )
                if sent:
                    report.stuck_notices += 1

            # Rule 4: reminders for unmet actions
            reminder_days = self._threshold(state.rule, "reminder_after_days")
            if state.gate.missing and time_in_phase > timedelta(days=reminder_days):
                sent = await self._notify_once(
                    session,
                    WorkflowEvent(
                        project_id=state.project_id,
                        kind=EventKind.REMINDER,
                        phase_key=state.current_phase_key,
                        payload={
                            **payload,
                            "pending_actions": [m.to_dict() for m in state.gate.missing],
                        },
                        recipient=state.recipient,
                    ),
                    now,
                    timedelta(days=self._config.reminder_cooldown_days),
                    report,
                )
                if sent:
                    report.reminders += 1

    def _should_auto_advance(self, state: ProjectState, requires_client_action: bool) -> bool:
        rule = state.rule
        if rule is None or not rule.advances_automatically or not state.advance_gate.satisfied:
            return False
        if rule.rule_type == RuleType.EXTERNAL_COMPLETION:
            # Needs something for the external subsystem to have completed
            return bool(state.advance_gate.required)
        return requires_client_action

    def _threshold(self, rule: Rule | None, name: str) -> int:
        value = getattr(rule, name, None) if rule is not None else None
        return value if value is not None else getattr(self._config, name)

    async def _notify_once(
        self,
        session: AsyncSession,
        event: WorkflowEvent,
        now: datetime,
        cooldown: timedelta,
        report: TickReport,
    ) -> bool:
        dedupe = DedupeStore(session)
        key = dedupe_key(event.kind, event.project_id, event.phase_key)
        if await dedupe.recently_sent(key, now, cooldown):
            report.skipped_by_dedupe += 1
            return False

        await self._publisher.publish(event)
        await dedupe.record(key, now)
        await session.commit()
        logger.info(
            f"Sent {event.kind.value} notice for project {event.project_id} "
            f"({event.phase_key}, {event.payload.get('days_in_phase')} days in phase)"
        )
        return True


def _recipient(project: Project) -> Recipient:
    return Recipient(
        user_id=project.client_id,
        email=project.client_email,
        name=project.client_name,
    )

