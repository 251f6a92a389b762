"""SQLAlchemy ORM Models for the portal workflow."""

from .base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDMixin
from .models import (
    # Enums
    ActionType,
    ActorType,
    EmailStatus,
    EventKind,
    RuleType,
    # Catalog
    AutomationRule,
    PhaseDefinition,
    RequiredAction,
    ServiceType,
    # Projects
    ActionStatus,
    Project,
    # Tracking
    NotificationDedupeRecord,
    PhaseHistory,
    PhaseTracking,
    # Outbox
    EmailOutbox,
    InAppNotification,
)

__all__ = [
    # Base
    "Base",
    "JSONType",
    "UTCDateTime",
    "UUIDMixin",
    "TimestampMixin",
    # Enums
    "ActionType",
    "ActorType",
    "EmailStatus",
    "EventKind",
    "RuleType",
    # Catalog
    "PhaseDefinition",
    "ServiceType",
    "RequiredAction",
    "AutomationRule",
    # Projects
    "Project",
    "ActionStatus",
    # Tracking
    "PhaseTracking",
    "PhaseHistory",
    "NotificationDedupeRecord",
    # Outbox
    "InAppNotification",
    "EmailOutbox",
]
