"""FastAPI dependencies for actor identity and shared workflow services.

Authentication happens upstream; the gateway forwards the verified user as
``X-User-ID`` and ``X-User-Role`` headers.
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..services.actors import Actor, ClientActor, OperatorActor
from ..services.automation_engine import AutomationEngine
from ..services.catalog import PhaseCatalog
from .clock import Clock
from .database import get_session

logger = logging.getLogger(__name__)

ROLES = ("client", "operator")


async def get_current_actor(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Actor:
    """Build the acting user from forwarded identity headers."""
    if not x_user_id or not x_user_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    try:
        user_id = UUID(x_user_id)
    except ValueError:
        logger.warning(f"Invalid X-User-ID header: {x_user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user ID format",
        )

    role = x_user_role.strip().lower()
    if role not in ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown role: {x_user_role}",
        )

    if role == "operator":
        return OperatorActor(user_id=user_id)
    return ClientActor(user_id=user_id)


def require_operator(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> OperatorActor:
    """Require the studio operator role."""
    if not isinstance(actor, OperatorActor):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator privileges required",
        )
    return actor


def get_automation_engine(request: Request) -> AutomationEngine:
    return request.app.state.automation_engine


def get_phase_catalog(request: Request) -> PhaseCatalog:
    return request.app.state.phase_catalog


def get_clock(request: Request) -> Clock:
    return request.app.state.clock


# Type aliases for cleaner dependency injection
ActorDep = Annotated[Actor, Depends(get_current_actor)]
OperatorDep = Annotated[OperatorActor, Depends(require_operator)]
EngineDep = Annotated[AutomationEngine, Depends(get_automation_engine)]
CatalogDep = Annotated[PhaseCatalog, Depends(get_phase_catalog)]
ClockDep = Annotated[Clock, Depends(get_clock)]
SessionDep = Annotated[AsyncSession, Depends(get_session)]
