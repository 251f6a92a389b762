"""Pydantic schemas for catalog, phase tracking and automation endpoints."""

from datetime import datetime
from uuid import UUID

from pydantic import Field, field_validator

from ..models import ActionType, ActorType, RuleType
from .base import WorkflowBaseModel


# =============================================================================
# CATALOG
# =============================================================================


class RequiredActionResponse(WorkflowBaseModel):
    action_key: str
    description: str
    action_type: ActionType


class PhaseResponse(WorkflowBaseModel):
    key: str
    name: str
    sort_order: int
    requires_client_action: bool
    description: str | None = None
    icon: str | None = None
    required_actions: list[RequiredActionResponse] = Field(default_factory=list)


class ServiceResponse(WorkflowBaseModel):
    code: str
    display_name: str
    default_phase_keys: list[str]
    sort_order: int = 0


class ResolvePhaseSetRequest(WorkflowBaseModel):
    service_codes: list[str] = Field(default_factory=list, max_length=50)


class ResolvePhaseSetResponse(WorkflowBaseModel):
    service_codes: list[str]
    phase_keys: list[str]


# =============================================================================
# GATE
# =============================================================================


class MissingRequirementResponse(WorkflowBaseModel):
    action_key: str
    description: str
    action_type: ActionType
    message: str


class RequirementsResponse(WorkflowBaseModel):
    project_id: UUID
    phase_key: str
    satisfied: bool
    required: list[str]
    missing: list[MissingRequirementResponse]


# =============================================================================
# TRACKING
# =============================================================================


class PhaseStatusEntry(WorkflowBaseModel):
    key: str
    name: str
    sort_order: int
    state: str  # completed | current | upcoming


class ProjectPhasesResponse(WorkflowBaseModel):
    """Current position of a project in its workflow."""

    project_id: UUID
    current_phase_key: str
    phase_started_at: datetime
    is_completed: bool
    completed_at: datetime | None = None
    phases: list[PhaseStatusEntry]
    requirements: RequirementsResponse | None = None


class AdvanceRequest(WorkflowBaseModel):
    reason: str | None = Field(default=None, max_length=500)
    expected_phase_key: str | None = Field(
        default=None,
        description="Only advance if the project is still in this phase",
    )
    force: bool = Field(
        default=False,
        description="Skip the requirement gate (operators only)",
    )


class AdvanceResponse(WorkflowBaseModel):
    project_id: UUID
    status: str
    previous_phase_key: str
    new_phase_key: str
    is_terminal: bool
    phase_started_at: datetime


class MovePhaseRequest(WorkflowBaseModel):
    phase_key: str = Field(..., min_length=1, max_length=20)
    reason: str | None = Field(default=None, max_length=500)


class UpdateServicesRequest(WorkflowBaseModel):
    service_codes: list[str] = Field(..., max_length=50)

    @field_validator("service_codes")
    @classmethod
    def dedupe_codes(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for code in v:
            code = code.strip()
            if code and code not in seen:
                seen.append(code)
        return seen


class UpdateServicesResponse(WorkflowBaseModel):
    project_id: UUID
    service_codes: list[str]
    phase_keys: list[str] | None = None
    current_phase_key: str | None = None


class PhaseHistoryEntry(WorkflowBaseModel):
    id: UUID
    from_phase_key: str | None
    to_phase_key: str | None
    is_terminal: bool
    reason: str | None
    actor_type: ActorType
    actor_user_id: UUID | None
    created_at: datetime


# =============================================================================
# AUTOMATION
# =============================================================================


class RuleResponse(WorkflowBaseModel):
    name: str
    from_phase_key: str | None
    to_phase_key: str
    rule_type: RuleType
    auto_advance: bool
    stuck_after_days: int | None = None
    reminder_after_days: int | None = None
    description: str | None = None


class TickReportResponse(WorkflowBaseModel):
    started_at: datetime
    completed_at: datetime | None
    projects_evaluated: int
    advanced: int
    stuck_notices: int
    reminders: int
    skipped_by_dedupe: int
    failures: int
    errors: list[str]
    duration_seconds: float
