"""Automation API Routes: rule administration and manual ticks (operators)."""

import logging

from fastapi import APIRouter

from ..core.dependencies import EngineDep, OperatorDep
from ..schemas import RuleResponse, TickReportResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/automation", tags=["automation"])


@router.get(
    "/rules",
    response_model=list[RuleResponse],
    summary="List the automation rules currently loaded by the engine",
)
async def list_rules(operator: OperatorDep, engine: EngineDep):
    return [RuleResponse(**rule.to_dict()) for rule in await engine.get_rules()]


@router.post(
    "/rules/reload",
    response_model=list[RuleResponse],
    summary="Reload automation rules from the database",
)
async def reload_rules(operator: OperatorDep, engine: EngineDep):
    rules = await engine.reload_rules()
    logger.info(f"Automation rules reloaded by operator {operator.user_id}")
    return [RuleResponse(**rule.to_dict()) for rule in rules]


@router.post(
    "/run",
    response_model=TickReportResponse,
    summary="Run one automation tick now",
    description="""
    Runs the same sweep as the scheduler: auto-advance, stuck detection,
    external completion and reminders over every active project.
    Per-project failures are reported, not raised.
    """,
)
async def run_tick(operator: OperatorDep, engine: EngineDep):
    report = await engine.run_tick()
    return TickReportResponse(**report.to_dict())
