"""
Shared fixtures: a throwaway SQLite database with the default catalog,
a controllable clock and a dispatcher that records what it was asked to send.
"""

import os

# Must be set before portal_workflow.main is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("AUTOMATION_ENABLED", "false")

from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine

from portal_workflow.core.config import Settings
from portal_workflow.core.database import build_session_factory, get_session, init_db
from portal_workflow.models import ActionStatus, Project, RequiredAction
from portal_workflow.services.actors import SYSTEM
from portal_workflow.services.automation_engine import AutomationConfig, AutomationEngine
from portal_workflow.services.catalog import PhaseCatalog
from portal_workflow.services.catalog_seed import seed_catalog
from portal_workflow.services.notification_dispatcher import NotificationDispatcher
from portal_workflow.services.phase_tracking import PhaseTracker

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# TEST DOUBLES
# =============================================================================


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher(NotificationDispatcher):
    """Records every call; channels listed in ``failing`` raise instead."""

    def __init__(self):
        self.in_app: list[tuple[UUID, str, dict]] = []
        self.realtime: list[tuple[UUID, str, dict]] = []
        self.emails: list[tuple[str, str, dict]] = []
        self.failing: set[str] = set()

    async def create_in_app_notification(self, user_id, kind, payload):
        if "in_app" in self.failing:
            raise ConnectionError("notification store down")
        self.in_app.append((user_id, kind, payload))

    async def push_realtime_event(self, user_id, kind, payload):
        if "realtime" in self.failing:
            raise ConnectionError("socket gateway down")
        self.realtime.append((user_id, kind, payload))

    async def queue_email(self, template_kind, recipient, payload):
        if "email" in self.failing:
            raise ConnectionError("smtp down")
        self.emails.append((template_kind, recipient, payload))

    def in_app_kinds(self) -> list[str]:
        return [kind for _, kind, _ in self.in_app]

    def email_templates(self) -> list[str]:
        return [template for template, _, _ in self.emails]


# =============================================================================
# DATABASE
# =============================================================================


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed so concurrent sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'workflow.db'}",
        connect_args={"timeout": 30},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def seeded(session_factory):
    async with session_factory() as session:
        created = await seed_catalog(session)
        await session.commit()
    return created


@pytest.fixture
async def session(session_factory, seeded):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def catalog(session_factory, seeded) -> PhaseCatalog:
    return PhaseCatalog(session_factory)


@pytest.fixture
def automation_config() -> AutomationConfig:
    return AutomationConfig(frontend_url="https://portal.example.com")


@pytest.fixture
async def engine(session_factory, dispatcher, catalog, automation_config, clock):
    engine = AutomationEngine(
        session_factory,
        dispatcher,
        catalog=catalog,
        config=automation_config,
        clock=clock,
    )
    await engine.start()
    return engine


# =============================================================================
# PROJECTS
# =============================================================================


@pytest.fixture
def make_project(session_factory, catalog, clock):
    """Create a project and, unless ``enroll=False``, start tracking it."""

    async def _make(
        services: list[str] | None = None,
        name: str = "Midnight Garden - Book Cover",
        enroll: bool = True,
        client_id: UUID | None = None,
    ) -> UUID:
        async with session_factory() as session:
            project = Project(
                id=uuid4(),
                name=name,
                client_id=client_id or uuid4(),
                client_email="ava@example.com",
                client_name="Ava Patel",
                service_codes=services if services is not None else ["book_cover"],
            )
            session.add(project)
            await session.flush()
            if enroll:
                await PhaseTracker(session, catalog, clock).start_tracking(project.id, SYSTEM)
            await session.commit()
            return project.id

    return _make


@pytest.fixture
def complete_action(session_factory, clock):
    """Mark a required action done, as the owning subsystem would."""

    async def _complete(
        project_id: UUID,
        phase_key: str,
        action_key: str,
        completed_at: datetime | None = None,
    ) -> None:
        async with session_factory() as session:
            action = (await session.execute(
                select(RequiredAction).where(
                    RequiredAction.phase_key == phase_key,
                    RequiredAction.action_key == action_key,
                )
            )).scalar_one()
            session.add(ActionStatus(
                project_id=project_id,
                action_id=action.id,
                is_completed=True,
                completed_at=completed_at or clock(),
            ))
            await session.commit()

    return _complete


@pytest.fixture
def move_to(session_factory, catalog, clock):
    """Put a project straight into a phase, bypassing the gate."""

    async def _move(project_id: UUID, phase_key: str) -> None:
        async with session_factory() as session:
            await PhaseTracker(session, catalog, clock).move_to_phase(
                project_id, phase_key, "test setup", SYSTEM
            )
            await session.commit()

    return _move


# =============================================================================
# API
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'workflow.db'}",
        environment="test",
        automation_enabled=False,
        FRONTEND_URL="https://portal.example.com",
    )


@pytest.fixture
async def app(settings, session_factory, dispatcher, clock, seeded):
    from portal_workflow.main import create_app

    app = create_app(
        settings=settings,
        session_factory=session_factory,
        dispatcher=dispatcher,
        clock=clock,
    )

    async def override_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session] = override_session
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def operator_headers() -> dict[str, str]:
    return {"X-User-ID": str(uuid4()), "X-User-Role": "operator"}
