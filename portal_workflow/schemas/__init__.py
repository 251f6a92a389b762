"""Workflow API Schemas.

Schemas are organized by domain:
- base: Base model, pagination, errors
- workflow: Catalog, phase tracking, requirements, automation
"""

from .base import (
    ErrorDetail,
    ErrorResponse,
    PaginatedResponse,
    PaginationParams,
    WorkflowBaseModel,
)
from .workflow import (
    AdvanceRequest,
    AdvanceResponse,
    MissingRequirementResponse,
    MovePhaseRequest,
    PhaseHistoryEntry,
    PhaseResponse,
    PhaseStatusEntry,
    ProjectPhasesResponse,
    RequiredActionResponse,
    RequirementsResponse,
    ResolvePhaseSetRequest,
    ResolvePhaseSetResponse,
    RuleResponse,
    ServiceResponse,
    TickReportResponse,
    UpdateServicesRequest,
    UpdateServicesResponse,
)

__all__ = [
    # Base
    "WorkflowBaseModel",
    "PaginationParams",
    "PaginatedResponse",
    "ErrorDetail",
    "ErrorResponse",
    # Catalog
    "PhaseResponse",
    "RequiredActionResponse",
    "ServiceResponse",
    "ResolvePhaseSetRequest",
    "ResolvePhaseSetResponse",
    # Gate
    "MissingRequirementResponse",
    "RequirementsResponse",
    # Tracking
    "PhaseStatusEntry",
    "ProjectPhasesResponse",
    "AdvanceRequest",
    "AdvanceResponse",
    "MovePhaseRequest",
    "UpdateServicesRequest",
    "UpdateServicesResponse",
    "PhaseHistoryEntry",
    # Automation
    "RuleResponse",
    "TickReportResponse",
]
