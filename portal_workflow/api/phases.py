"""
Phase API Routes: per-project workflow position and transitions.

1. POST /projects/{id}/tracking - Enroll a project into the workflow
2. GET /projects/{id}/phases - Current phase, phase set and gate status
3. POST /projects/{id}/phases/advance - Gated advance (operators may force)
4. PUT /projects/{id}/phases/current - Operator jump to a phase
5. PUT /projects/{id}/services - Change services and recompute the phase set
6. GET /projects/{id}/phases/history - Audit trail
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select

from ..core.dependencies import ActorDep, CatalogDep, ClockDep, EngineDep, OperatorDep, SessionDep
from ..core.errors import (
    ConcurrentUpdateError,
    InvalidServiceError,
    PhaseNotInSetError,
    ProjectNotFoundError,
    TransientStoreError,
)
from ..models import PhaseTracking, Project
from ..schemas import (
    AdvanceRequest,
    AdvanceResponse,
    MissingRequirementResponse,
    MovePhaseRequest,
    PaginatedResponse,
    PaginationParams,
    PhaseHistoryEntry,
    PhaseStatusEntry,
    ProjectPhasesResponse,
    RequirementsResponse,
    UpdateServicesRequest,
    UpdateServicesResponse,
)
from ..services.actors import Actor, ClientActor, OperatorActor
from ..services.catalog import PhaseCatalog
from ..services.phase_tracking import AdvanceResult, PhaseTracker
from ..services.requirement_gate import GateResult, RequirementGate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["phases"])


# =============================================================================
# HELPERS
# =============================================================================


async def get_project_for_actor(session, project_id: UUID, actor: Actor) -> Project:
    """Load the project; clients may only see their own."""
    result = await session.execute(select(Project).where(Project.id == project_id))
    project = result.scalar_one_or_none()
    if project is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {project_id} not found",
        )
    if isinstance(actor, ClientActor) and project.client_id != actor.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not your project",
        )
    return project


def build_requirements_response(gate: GateResult) -> RequirementsResponse:
    return RequirementsResponse(
        project_id=gate.project_id,
        phase_key=gate.phase_key,
        satisfied=gate.satisfied,
        required=gate.required,
        missing=[
            MissingRequirementResponse(**m.to_dict()) for m in gate.missing
        ],
    )


async def build_phases_response(
    tracking: PhaseTracking,
    catalog: PhaseCatalog,
    gate: GateResult | None,
) -> ProjectPhasesResponse:
    snapshot = await catalog.snapshot()
    current_index = tracking.phase_keys.index(tracking.current_phase_key)

    phases = []
    for index, key in enumerate(tracking.phase_keys):
        if tracking.is_completed or index < current_index:
            state = "completed"
        elif index == current_index:
            state = "current"
        else:
            state = "upcoming"
        info = snapshot.phases.get(key)
        phases.append(PhaseStatusEntry(
            key=key,
            name=info.name if info else key,
            sort_order=info.sort_order if info else index,
            state=state,
        ))

    return ProjectPhasesResponse(
        project_id=tracking.project_id,
        current_phase_key=tracking.current_phase_key,
        phase_started_at=tracking.phase_started_at,
        is_completed=tracking.is_completed,
        completed_at=tracking.completed_at,
        phases=phases,
        requirements=build_requirements_response(gate) if gate else None,
    )


def build_advance_response(result: AdvanceResult) -> AdvanceResponse:
    return AdvanceResponse(
        project_id=result.project_id,
        status=result.status.value,
        previous_phase_key=result.previous_phase_key,
        new_phase_key=result.new_phase_key,
        is_terminal=result.is_terminal,
        phase_started_at=result.phase_started_at,
    )


def default_reason(actor: Actor, verb: str) -> str:
    if isinstance(actor, OperatorActor):
        return f"{verb} by operator"
    return f"{verb} by client"


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.post(
    "/{project_id}/tracking",
    response_model=ProjectPhasesResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enroll a project into the phase workflow",
    description="""
    Resolve the project's phase set from its services and start it at the
    first phase. Calling this again for an enrolled project returns the
    existing tracking unchanged.
    """,
)
async def start_tracking(
    project_id: UUID,
    operator: OperatorDep,
    session: SessionDep,
    catalog: CatalogDep,
    clock: ClockDep,
):
    try:
        tracker = PhaseTracker(session, catalog, clock)
        tracking = await tracker.start_tracking(project_id, operator)
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidServiceError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        )

    gate = await RequirementGate(session).evaluate(project_id, tracking.current_phase_key)
    return await build_phases_response(tracking, catalog, gate)


@router.get(
    "/{project_id}/phases",
    response_model=ProjectPhasesResponse,
    summary="Get a project's phase status",
)
async def get_project_phases(
    project_id: UUID,
    actor: ActorDep,
    session: SessionDep,
    catalog: CatalogDep,
):
    await get_project_for_actor(session, project_id, actor)
    try:
        tracking = await PhaseTracker(session, catalog).get_tracking(project_id)
    except ProjectNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {project_id} is not enrolled in the workflow",
        )

    gate = None
    if not tracking.is_completed:
        gate = await RequirementGate(session).evaluate(project_id, tracking.current_phase_key)
    return await build_phases_response(tracking, catalog, gate)


@router.get(
    "/{project_id}/phases/history",
    response_model=PaginatedResponse,
    summary="List a project's phase transitions, newest first",
)
async def get_phase_history(
    project_id: UUID,
    actor: ActorDep,
    session: SessionDep,
    pagination: Annotated[PaginationParams, Depends()],
):
    await get_project_for_actor(session, project_id, actor)
    try:
        items, total = await PhaseTracker(session).get_history(
            project_id,
            limit=pagination.page_size,
            offset=pagination.offset,
        )
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return PaginatedResponse.create(
        items=[PhaseHistoryEntry.model_validate(h) for h in items],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.get(
    "/{project_id}/phases/{phase_key}/requirements",
    response_model=RequirementsResponse,
    summary="Evaluate the requirement gate for one phase",
)
async def get_phase_requirements(
    project_id: UUID,
    phase_key: str,
    actor: ActorDep,
    session: SessionDep,
    catalog: CatalogDep,
):
    await get_project_for_actor(session, project_id, actor)
    try:
        tracking = await PhaseTracker(session, catalog).get_tracking(project_id)
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    if phase_key not in tracking.phase_keys:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(PhaseNotInSetError(project_id, phase_key)),
        )

    gate = await RequirementGate(session).evaluate(project_id, phase_key)
    return build_requirements_response(gate)


@router.post(
    "/{project_id}/phases/advance",
    response_model=AdvanceResponse,
    summary="Advance a project to its next phase",
    description="""
    Checks the requirement gate for the current phase first. If actions are
    missing the response is 409 with the structured list of what is missing.
    Operators may pass `force=true` to skip the gate. Clients may only
    advance phases that wait on their own actions; studio phases are 403.

    Advancing a completed project is not an error: the response status is
    `already_complete`.
    """,
)
async def advance_phase(
    project_id: UUID,
    request: AdvanceRequest,
    actor: ActorDep,
    session: SessionDep,
    catalog: CatalogDep,
    engine: EngineDep,
):
    if request.force and not isinstance(actor, OperatorActor):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only operators can force an advance",
        )

    await get_project_for_actor(session, project_id, actor)
    try:
        tracking = await PhaseTracker(session).get_tracking(project_id)
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    source = request.expected_phase_key or tracking.current_phase_key

    if not tracking.is_completed and not request.force:
        gate = await RequirementGate(session).evaluate(project_id, tracking.current_phase_key)
        if isinstance(actor, ClientActor):
            phase = await catalog.get_phase(tracking.current_phase_key)
            if phase is None or not phase.requires_client_action or not gate.required:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Phase {tracking.current_phase_key} is advanced by the studio",
                )
        if not gate.satisfied:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={
                    "message": f"Cannot advance: {'; '.join(gate.reasons)}",
                    "phase_key": gate.phase_key,
                    "missing_requirements": [m.to_dict() for m in gate.missing],
                },
            )

    # End the read transaction before the engine writes in its own session
    await session.commit()

    verb = "forced" if request.force else "advanced"
    try:
        result = await engine.advance(
            project_id,
            request.reason or default_reason(actor, verb),
            actor,
            expected_phase_key=None if tracking.is_completed else source,
        )
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except TransientStoreError as e:
        logger.warning(f"Advance of project {project_id} failed transiently: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Workflow store temporarily unavailable; retry",
        )

    return build_advance_response(result)


@router.put(
    "/{project_id}/phases/current",
    response_model=AdvanceResponse,
    summary="Move a project directly to a phase (operators)",
)
async def move_to_phase(
    project_id: UUID,
    request: MovePhaseRequest,
    operator: OperatorDep,
    engine: EngineDep,
):
    try:
        result = await engine.move_to_phase(
            project_id,
            request.phase_key,
            request.reason or default_reason(operator, "moved"),
            operator,
        )
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PhaseNotInSetError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        )
    except TransientStoreError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Workflow store temporarily unavailable; retry",
        )

    return build_advance_response(result)


@router.put(
    "/{project_id}/services",
    response_model=UpdateServicesResponse,
    summary="Change a project's services and recompute its phase set",
)
async def update_services(
    project_id: UUID,
    request: UpdateServicesRequest,
    operator: OperatorDep,
    session: SessionDep,
    catalog: CatalogDep,
    clock: ClockDep,
):
    try:
        tracking = await PhaseTracker(session, catalog, clock).update_services(
            project_id, request.service_codes, operator
        )
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except InvalidServiceError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)
        )

    return UpdateServicesResponse(
        project_id=project_id,
        service_codes=request.service_codes,
        phase_keys=list(tracking.phase_keys) if tracking else None,
        current_phase_key=tracking.current_phase_key if tracking else None,
    )
