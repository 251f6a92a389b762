"""
Notification Dispatcher: the boundary between workflow events and delivery.

The engine only knows ``NotificationDispatcher``, an interface with three
operations (in-app notification, realtime push, email queueing). Rendering,
SMTP and socket transport belong to other services.

``EventPublisher`` turns one ``WorkflowEvent`` into calls on all three
channels. A failing channel never blocks the others and never undoes a
committed transition.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import EmailOutbox, EmailStatus, EventKind, InAppNotification

logger = logging.getLogger(__name__)


# =============================================================================
# EVENT TYPES
# =============================================================================


@dataclass(frozen=True)
class Recipient:
    """Client who receives project notifications."""
    user_id: UUID
    email: str
    name: str | None = None


@dataclass
class WorkflowEvent:
    project_id: UUID
    kind: EventKind
    phase_key: str
    payload: dict[str, Any] = field(default_factory=dict)
    recipient: Recipient | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": str(self.project_id),
            "kind": self.kind.value,
            "phase_key": self.phase_key,
            "payload": self.payload,
        }


# Per-kind presentation: (in-app kind, email template, realtime event, title)
EVENT_CHANNELS: dict[EventKind, tuple[str, str, str, str]] = {
    EventKind.ADVANCED: (
        "phase_advanced", "phase_advanced", "phase:updated", "Project Phase Updated",
    ),
    EventKind.STUCK: (
        "project_stuck", "stuck_project", "phase:stuck", "Action Required on Your Project",
    ),
    EventKind.REMINDER: (
        "action_reminder", "action_reminder", "phase:reminder", "Pending Actions on Your Project",
    ),
}


def render_message(event: WorkflowEvent) -> str:
    project_name = event.payload.get("project_name", "your project")
    phase_name = event.payload.get("phase_name", event.phase_key)

    if event.kind == EventKind.ADVANCED:
        if event.payload.get("is_terminal"):
            return f'Your project "{project_name}" is complete.'
        return f'Your project "{project_name}" has moved to the {phase_name} phase.'
    if event.kind == EventKind.STUCK:
        days = event.payload.get("days_in_phase")
        return (
            f'Your project "{project_name}" has been in the {phase_name} phase '
            f"for {days} days. Please check if any action is needed."
        )
    pending = event.payload.get("pending_actions", [])
    return (
        f'You have {len(pending)} pending action(s) for "{project_name}" '
        f"in the {phase_name} phase."
    )


# =============================================================================
# DISPATCHER INTERFACE
# =============================================================================


class NotificationDispatcher(ABC):
    """Delivery boundary used by the automation engine."""

    @abstractmethod
    async def create_in_app_notification(
        self,
        user_id: UUID,
        kind: str,
        payload: dict[str, Any],
    ) -> None:
        pass

    @abstractmethod
    async def push_realtime_event(
        self,
        user_id: UUID,
        kind: str,
        payload: dict[str, Any],
    ) -> None:
        pass

    @abstractmethod
    async def queue_email(
        self,
        template_kind: str,
        recipient: str,
        payload: dict[str, Any],
    ) -> None:
        pass


class OutboxDispatcher(NotificationDispatcher):
    """
    Writes notifications and queued emails as rows, and pushes realtime
    events to an HTTP gateway when one is configured.

    Each write commits in its own session; dispatch runs after the
    transition's transaction has already committed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        realtime_gateway_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ):
        self._session_factory = session_factory
        self._gateway_url = realtime_gateway_url
        self._http_client = http_client
        self._timeout = timeout_seconds

    async def create_in_app_notification(self, user_id, kind, payload):
        async with self._session_factory() as session:
            session.add(
                InAppNotification(
                    user_id=user_id,
                    kind=kind,
                    title=payload.get("title", kind),
                    message=payload.get("message", ""),
                    link=payload.get("link"),
                    payload=payload,
                )
            )
            await session.commit()

    async def push_realtime_event(self, user_id, kind, payload):
        if not self._gateway_url:
            logger.debug(f"No realtime gateway configured; dropping {kind} for {user_id}")
            return

        body = {"room": f"user-{user_id}", "event": kind, "data": payload}
        if self._http_client is not None:
            response = await self._http_client.post(
                self._gateway_url, json=body, timeout=self._timeout
            )
            response.raise_for_status()
            return

        async with httpx.AsyncClient() as client:
            response = await client.post(self._gateway_url, json=body, timeout=self._timeout)
            response.raise_for_status()

    async def queue_email(self, template_kind, recipient, payload):
        async with self._session_factory() as session:
            session.add(
                EmailOutbox(
                    template_kind=template_kind,
                    recipient=recipient,
                    payload=payload,
                    status=EmailStatus.PENDING,
                )
            )
            await session.commit()


# =============================================================================
# PUBLISHER
# =============================================================================


@dataclass
class PublishOutcome:
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class EventPublisher:
    """Fans workflow events out to every dispatcher channel."""

    def __init__(self, dispatcher: NotificationDispatcher, frontend_url: str = ""):
        self._dispatcher = dispatcher
        self._frontend_url = frontend_url.rstrip("/")

    async def publish(self, event: WorkflowEvent) -> PublishOutcome:
        outcome = PublishOutcome()
        if event.recipient is None:
            logger.warning(
                f"No recipient for {event.kind.value} event on project {event.project_id}"
            )
            return outcome

        in_app_kind, template_kind, realtime_kind, title = EVENT_CHANNELS[event.kind]
        message = render_message(event)
        link = f"{self._frontend_url}/portal#projects"
        recipient = event.recipient

        channels = [
            (
                "in_app",
                self._dispatcher.create_in_app_notification,
                (recipient.user_id, in_app_kind, {
                    **event.to_dict(), "title": title, "message": message, "link": link,
                }),
            ),
            (
                "realtime",
                self._dispatcher.push_realtime_event,
                (recipient.user_id, realtime_kind, event.to_dict()),
            ),
            (
                "email",
                self._dispatcher.queue_email,
                (template_kind, recipient.email, {
                    **event.payload,
                    "client_name": recipient.name,
                    "phase_key": event.phase_key,
                    "portal_link": link,
                }),
            ),
        ]

        for name, send, args in channels:
            try:
                await send(*args)
                outcome.delivered.append(name)
            except Exception as e:
                outcome.failed[name] = str(e)
                self._log_failure(event, name, e)

        return outcome

    def _log_failure(self, event: WorkflowEvent, channel: str, error: Exception) -> None:
        level = logging.ERROR if event.kind == EventKind.ADVANCED else logging.WARNING
        logger.log(
            level,
            f"Failed to dispatch {event.kind.value} via {channel} for project "
            f"{event.project_id} ({event.phase_key}): {error}",
        )
