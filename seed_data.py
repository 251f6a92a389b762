#!/usr/bin/env python3
"""
Seed Data Script for the Studio Portal Workflow

Loads the default catalog (8 phases, services, required actions and
automation rules) and creates a few demo projects at different points of
the workflow:
  - Project A: Book cover, waiting on the onboarding intake form
  - Project B: Logo & brand, stuck in review for 10 days
  - Project C: Book cover, in payment with the invoice just paid
  - Project D: Consultation, already at launch

Run with: python seed_data.py
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from portal_workflow.core.config import get_settings
from portal_workflow.models import (
    ActionStatus,
    ActorType,
    Base,
    PhaseHistory,
    PhaseTracking,
    Project,
    RequiredAction,
)
from portal_workflow.services.catalog import PhaseCatalog
from portal_workflow.services.catalog_seed import seed_catalog

settings = get_settings()


async def seed_database():
    """Main seeding function."""

    engine = create_async_engine(settings.database_url_async, echo=False)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        print("🌱 Starting database seed...")

        result = await session.execute(text("SELECT COUNT(*) FROM projects"))
        count = result.scalar()
        if count and count > 0:
            print("⚠️  Database already has projects. Clearing workflow data...")
            await clear_database(session)

        # =================================================================
        # CATALOG
        # =================================================================
        print("\n📦 Seeding phase catalog...")
        created = await seed_catalog(session)
        await session.commit()
        print(f"   ✓ {created}")

        catalog = PhaseCatalog(
            async_session,
            first_phase_key=settings.first_phase_key,
            last_phase_key=settings.last_phase_key,
        )
        now = datetime.now(timezone.utc)

        # =================================================================
        # DEMO PROJECTS
        # =================================================================
        print("\n📁 Creating demo projects...")

        demo = [
            ("Midnight Garden - Book Cover", "Ava Patel", ["book_cover"], "ONB", timedelta(hours=2)),
            ("Harbor Coffee Rebrand", "Noah Kim", ["logo_brand"], "REV", timedelta(days=10)),
            ("The Long Winter - Book Cover", "Mia Lopez", ["book_cover"], "PAY", timedelta(days=1)),
            ("Portfolio Strategy Session", "Leo Chen", ["consultation"], "LAUNCH", timedelta(days=2)),
        ]

        for name, client_name, services, phase_key, age in demo:
            project = Project(
                id=uuid4(),
                name=name,
                client_id=uuid4(),
                client_email=f"{client_name.split()[0].lower()}@example.com",
                client_name=client_name,
                service_codes=services,
            )
            session.add(project)
            await session.flush()

            phase_keys = await catalog.resolve_phase_set(services)
            started_at = now - age
            session.add(PhaseTracking(
                project_id=project.id,
                current_phase_key=phase_key,
                phase_keys=phase_keys,
                phase_started_at=started_at,
            ))
            session.add(PhaseHistory(
                project_id=project.id,
                from_phase_key=None,
                to_phase_key=phase_key,
                reason="seeded",
                actor_type=ActorType.SYSTEM,
                created_at=started_at,
            ))
            print(f"   ✓ {name}: {' → '.join(phase_keys)} (at {phase_key})")

            # The paid invoice for project C
            if phase_key == "PAY":
                action = (await session.execute(
                    select(RequiredAction).where(
                        RequiredAction.phase_key == "PAY",
                        RequiredAction.action_key == "final_payment",
                    )
                )).scalar_one()
                session.add(ActionStatus(
                    project_id=project.id,
                    action_id=action.id,
                    is_completed=True,
                    completed_at=now - timedelta(minutes=5),
                    details={"invoice_number": "INV-2024-0042"},
                ))

        await session.commit()

    await engine.dispose()
    print("\n✅ Seed complete. Run `portal-automation` to see the engine pick them up.")


async def clear_database(session: AsyncSession):
    """Remove projects and everything the workflow wrote for them."""
    for table in (
        "email_outbox",
        "notifications",
        "notification_dedupe",
        "phase_history",
        "action_status",
        "phase_tracking",
        "projects",
    ):
        await session.execute(text(f"DELETE FROM {table}"))
    await session.commit()


if __name__ == "__main__":
    asyncio.run(seed_database())
