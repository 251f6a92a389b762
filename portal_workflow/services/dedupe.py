"""Notification dedupe window: at most one notice per (kind, project, phase) per cool-down."""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import EventKind, NotificationDedupeRecord

logger = logging.getLogger(__name__)


def dedupe_key(kind: EventKind | str, project_id: UUID, phase_key: str) -> str:
    kind_value = kind.value if isinstance(kind, EventKind) else kind
    return f"{kind_value}:{project_id}:{phase_key}"


class DedupeStore:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def last_sent(self, key: str) -> datetime | None:
        result = await self._session.execute(
            select(NotificationDedupeRecord.last_sent_at).where(
                NotificationDedupeRecord.key == key
            )
        )
        return result.scalar_one_or_none()

    async def recently_sent(self, key: str, now: datetime, cooldown: timedelta) -> bool:
        last = await self.last_sent(key)
        return last is not None and now - last < cooldown

    async def record(self, key: str, sent_at: datetime) -> None:
        """Upsert last_sent_at; concurrent writers resolve last-write-wins."""
        dialect = self._session.bind.dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = insert(NotificationDedupeRecord).values(key=key, last_sent_at=sent_at)
        stmt = stmt.on_conflict_do_update(
            index_elements=[NotificationDedupeRecord.key],
            set_={"last_sent_at": stmt.excluded.last_sent_at},
        )
        await self._session.execute(stmt)

    async def forget(self, key: str) -> None:
        await self._session.execute(
            delete(NotificationDedupeRecord).where(NotificationDedupeRecord.key == key)
        )


async def prune_dedupe_records(session: AsyncSession, older_than: datetime) -> int:
    """Delete records last sent before ``older_than``. Operator job only."""
    result = await session.execute(
        delete(NotificationDedupeRecord).where(
            NotificationDedupeRecord.last_sent_at < older_than
        )
    )
    logger.info(f"Pruned {result.rowcount} notification dedupe records older than {older_than.isoformat()}")
    return result.rowcount
