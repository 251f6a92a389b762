"""Catalog API Routes: phase definitions, services and phase-set resolution."""

from fastapi import APIRouter, HTTPException, status

from ..core.dependencies import ActorDep, CatalogDep, OperatorDep
from ..core.errors import InvalidServiceError
from ..schemas import (
    PhaseResponse,
    RequiredActionResponse,
    ResolvePhaseSetRequest,
    ResolvePhaseSetResponse,
    ServiceResponse,
)
from ..services.catalog import PhaseInfo

router = APIRouter(prefix="/catalog", tags=["catalog"])


def build_phase_response(phase: PhaseInfo) -> PhaseResponse:
    return PhaseResponse(
        key=phase.key,
        name=phase.name,
        sort_order=phase.sort_order,
        requires_client_action=phase.requires_client_action,
        description=phase.description,
        icon=phase.icon,
        required_actions=[
            RequiredActionResponse(
                action_key=a.action_key,
                description=a.description,
                action_type=a.action_type,
            )
            for a in phase.required_actions
        ],
    )


@router.get(
    "/phases",
    response_model=list[PhaseResponse],
    summary="List phase definitions in workflow order",
)
async def list_phases(actor: ActorDep, catalog: CatalogDep):
    return [build_phase_response(p) for p in await catalog.list_phases()]


@router.get(
    "/services",
    response_model=list[ServiceResponse],
    summary="List active service types",
)
async def list_services(actor: ActorDep, catalog: CatalogDep):
    return [
        ServiceResponse(
            code=s.code,
            display_name=s.display_name,
            default_phase_keys=list(s.default_phase_keys),
            sort_order=s.sort_order,
        )
        for s in await catalog.list_services()
    ]


@router.post(
    "/resolve",
    response_model=ResolvePhaseSetResponse,
    summary="Resolve service codes to an ordered phase set",
)
async def resolve_phase_set(
    request: ResolvePhaseSetRequest,
    actor: ActorDep,
    catalog: CatalogDep,
):
    try:
        phase_keys = await catalog.resolve_phase_set(request.service_codes)
    except InvalidServiceError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        )
    return ResolvePhaseSetResponse(
        service_codes=request.service_codes,
        phase_keys=phase_keys,
    )


@router.post(
    "/invalidate",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Drop the cached catalog after administrative edits",
)
async def invalidate_catalog(operator: OperatorDep, catalog: CatalogDep):
    catalog.invalidate()
