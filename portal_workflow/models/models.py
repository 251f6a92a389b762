"""SQLAlchemy ORM Models for the phase workflow.

Catalog tables (phases, services, required actions, automation rules) are
configuration and change only through administrative edits. Project and
action-status rows are owned by collaborating subsystems and are read-only
from the engine's point of view. Tracking, history and dedupe rows are
written by the engine.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDMixin


# =============================================================================
# ENUMS
# =============================================================================


class ActorType(str, PyEnum):
    """Who caused a phase transition."""
    CLIENT = "client"
    OPERATOR = "operator"
    SYSTEM = "system"


class ActionType(str, PyEnum):
    """Kind of subsystem that completes a required action."""
    FORM = "form"
    PAYMENT = "payment"
    SIGNATURE = "signature"
    APPROVAL = "approval"
    REVIEW = "review"
    OTHER = "other"


class RuleType(str, PyEnum):
    ALL_ACTIONS_COMPLETE = "all_actions_complete"
    EXTERNAL_COMPLETION = "external_completion"  # e.g. payment webhook
    MANUAL_ONLY = "manual_only"


class EventKind(str, PyEnum):
    ADVANCED = "advanced"
    STUCK = "stuck"
    REMINDER = "reminder"


class EmailStatus(str, PyEnum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda x: [e.value for e in x],
        native_enum=False,
        length=32,
    )


# =============================================================================
# CATALOG
# =============================================================================


class PhaseDefinition(Base):
    """Catalog entry for one workflow phase."""

    __tablename__ = "phase_definitions"

    key: Mapped[str] = mapped_column(String(20), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    icon: Mapped[str | None] = mapped_column(String(50))
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    requires_client_action: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    required_actions: Mapped[list["RequiredAction"]] = relationship(
        back_populates="phase",
        order_by="RequiredAction.sort_order",
    )


class ServiceType(Base):
    """A sellable service and the phases it brings into a project."""

    __tablename__ = "service_types"

    code: Mapped[str] = mapped_column(String(32), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    default_phase_keys: Mapped[list[str]] = mapped_column(
        JSONType, default=list, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class RequiredAction(Base, UUIDMixin):
    """A mandatory client action gating advancement out of a phase."""

    __tablename__ = "required_actions"

    phase_key: Mapped[str] = mapped_column(
        ForeignKey("phase_definitions.key", ondelete="CASCADE"), nullable=False
    )
    action_key: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    action_type: Mapped[ActionType] = mapped_column(
        _enum(ActionType, "action_type"),
        default=ActionType.OTHER,
        nullable=False,
    )
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    phase: Mapped["PhaseDefinition"] = relationship(back_populates="required_actions")

    __table_args__ = (
        UniqueConstraint("phase_key", "action_key", name="uq_required_actions_phase_action"),
        Index("idx_required_actions_phase", "phase_key"),
    )


class AutomationRule(Base, UUIDMixin, TimestampMixin):
    """Data-driven rule for a transition shape.

    ``from_phase_key`` NULL means the rule matches any current phase
    advancing into ``to_phase_key``.
    """

    __tablename__ = "automation_rules"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    from_phase_key: Mapped[str | None] = mapped_column(
        ForeignKey("phase_definitions.key"), nullable=True
    )
    to_phase_key: Mapped[str] = mapped_column(
        ForeignKey("phase_definitions.key"), nullable=False
    )
    rule_type: Mapped[RuleType] = mapped_column(
        _enum(RuleType, "rule_type"),
        default=RuleType.ALL_ACTIONS_COMPLETE,
        nullable=False,
    )
    auto_advance: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    stuck_after_days: Mapped[int | None] = mapped_column(Integer)
    reminder_after_days: Mapped[int | None] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "stuck_after_days IS NULL OR stuck_after_days > 0",
            name="stuck_after_days_positive",
        ),
        CheckConstraint(
            "reminder_after_days IS NULL OR reminder_after_days > 0",
            name="reminder_after_days_positive",
        ),
        Index("idx_automation_rules_phases", "from_phase_key", "to_phase_key"),
    )


# =============================================================================
# PROJECTS & ACTION COMPLETIONS (collaborator-owned)
# =============================================================================


class Project(Base, UUIDMixin, TimestampMixin):
    """Client project, as much of it as the workflow needs."""

    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_id: Mapped[UUID] = mapped_column(nullable=False)
    client_email: Mapped[str] = mapped_column(String(255), nullable=False)
    client_name: Mapped[str | None] = mapped_column(String(255))
    service_codes: Mapped[list[str]] = mapped_column(
        JSONType, default=list, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    tracking: Mapped["PhaseTracking | None"] = relationship(
        back_populates="project", uselist=False
    )


class ActionStatus(Base, UUIDMixin, TimestampMixin):
    """Per-project completion flag for one required action."""

    __tablename__ = "action_status"

    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    action_id: Mapped[UUID] = mapped_column(
        ForeignKey("required_actions.id", ondelete="CASCADE"), nullable=False
    )
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    completed_by: Mapped[UUID | None] = mapped_column()
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)

    __table_args__ = (
        UniqueConstraint("project_id", "action_id", name="uq_action_status_project_action"),
        Index("idx_action_status_project", "project_id"),
    )


# =============================================================================
# TRACKING & AUDIT
# =============================================================================


class PhaseTracking(Base, UUIDMixin, TimestampMixin):
    """Current workflow position of one project."""

    __tablename__ = "phase_tracking"

    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    current_phase_key: Mapped[str] = mapped_column(
        ForeignKey("phase_definitions.key"), nullable=False
    )
    # Ordered ProjectPhaseSet, recomputed only when services change
    phase_keys: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    phase_started_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    # Optimistic lock; bumped on every transition
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    project: Mapped["Project"] = relationship(back_populates="tracking")

    __table_args__ = (
        Index("idx_phase_tracking_active", "is_completed"),
    )


class PhaseHistory(Base, UUIDMixin):
    """Append-only audit trail of phase transitions."""

    __tablename__ = "phase_history"

    project_id: Mapped[UUID] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    from_phase_key: Mapped[str | None] = mapped_column(String(20))
    to_phase_key: Mapped[str | None] = mapped_column(String(20))  # NULL = terminal
    is_terminal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    actor_type: Mapped[ActorType] = mapped_column(
        _enum(ActorType, "actor_type"), nullable=False
    )
    actor_user_id: Mapped[UUID | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        Index("idx_phase_history_project", "project_id", "created_at"),
    )


class NotificationDedupeRecord(Base):
    """Last send time of a stuck/reminder notice, keyed kind:project:phase."""

    __tablename__ = "notification_dedupe"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    last_sent_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


# =============================================================================
# NOTIFICATION OUTBOX
# =============================================================================


class InAppNotification(Base, UUIDMixin):
    """Notification shown in the client portal."""

    __tablename__ = "notifications"

    user_id: Mapped[UUID] = mapped_column(nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str | None] = mapped_column(String(500))
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_notifications_user_unread", "user_id", "is_read"),
    )


class EmailOutbox(Base, UUIDMixin):
    """Queued email; rendering and delivery belong to the email service."""

    __tablename__ = "email_outbox"

    template_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    status: Mapped[EmailStatus] = mapped_column(
        _enum(EmailStatus, "email_status"),
        default=EmailStatus.PENDING,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), server_default=func.now(), nullable=False
    )
