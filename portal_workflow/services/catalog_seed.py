"""Default studio catalog: phases, services, required actions and rules.

``seed_catalog`` is idempotent; existing rows (matched by natural key) are
left untouched so operator edits survive a re-seed.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    ActionType,
    AutomationRule,
    PhaseDefinition,
    RequiredAction,
    RuleType,
    ServiceType,
)

logger = logging.getLogger(__name__)


# key, name, description, icon, sort_order, requires_client_action
DEFAULT_PHASES = [
    ("ONB", "Onboarding", "Initial kickoff and info gathering", "📋", 1, True),
    ("IDEA", "Ideation", "Brainstorming & concept development", "💡", 2, False),
    ("DSGN", "Design", "Creation of designs and prototypes", "🎨", 3, False),
    ("REV", "Review & Feedback", "Client review and feedback collection", "👀", 4, True),
    ("PROD", "Production/Print", "Final production and printing", "🖨️", 5, False),
    ("PAY", "Payment", "Final payment collection", "💳", 6, True),
    ("SIGN", "Sign-off & Docs", "Final approvals and documentation", "✍️", 7, True),
    ("LAUNCH", "Launch", "Final deliverables and handover", "🚀", 8, True),
]

# code, display name, phases beyond the always-present first and last
DEFAULT_SERVICES = [
    ("book_cover", "Book Cover Design", ["IDEA", "DSGN", "REV", "PROD", "PAY", "SIGN"]),
    ("logo_brand", "Logo & Brand Identity", ["IDEA", "DSGN", "REV", "PAY", "SIGN"]),
    ("web_design", "Website Design", ["IDEA", "DSGN", "REV", "PAY", "SIGN"]),
    ("print_production", "Print Production", ["PROD", "PAY"]),
    ("consultation", "Creative Consultation", []),
]

# phase_key -> [(action_key, description, action_type)]
DEFAULT_ACTIONS = {
    "ONB": [
        ("intake_form", "Complete the project intake form", ActionType.FORM),
    ],
    "REV": [
        ("review_deliverables", "Review design deliverables", ActionType.REVIEW),
        ("provide_feedback", "Provide detailed feedback", ActionType.FORM),
        ("approve_designs", "Approve final designs", ActionType.APPROVAL),
    ],
    "PAY": [
        ("final_payment", "Complete final payment", ActionType.PAYMENT),
    ],
    "SIGN": [
        ("sign_completion", "Sign project completion form", ActionType.SIGNATURE),
        ("acknowledge_deliverables", "Acknowledge receipt of deliverables", ActionType.APPROVAL),
    ],
    "LAUNCH": [
        ("confirm_receipt", "Confirm receipt of all deliverables", ActionType.APPROVAL),
    ],
}

# name, from (None = any), to, type, auto_advance, stuck_after_days, reminder_after_days
DEFAULT_RULES = [
    ("Onboarding complete", "ONB", "IDEA", RuleType.ALL_ACTIONS_COMPLETE, True, None, None),
    ("Review approved", "REV", "PROD", RuleType.ALL_ACTIONS_COMPLETE, False, None, None),
    ("Payment received", "PAY", "SIGN", RuleType.EXTERNAL_COMPLETION, True, None, 2),
    ("Sign-off complete", "SIGN", "LAUNCH", RuleType.ALL_ACTIONS_COMPLETE, True, None, None),
    ("Launch readiness", None, "LAUNCH", RuleType.MANUAL_ONLY, False, 14, None),
]


async def seed_catalog(session: AsyncSession) -> dict[str, int]:
    """Insert missing catalog rows. Returns counts of rows created."""
    created = {"phases": 0, "services": 0, "actions": 0, "rules": 0}

    existing_phases = set((await session.execute(select(PhaseDefinition.key))).scalars().all())
    for key, name, description, icon, sort_order, requires_action in DEFAULT_PHASES:
        if key in existing_phases:
            continue
        session.add(PhaseDefinition(
            key=key,
            name=name,
            description=description,
            icon=icon,
            sort_order=sort_order,
            requires_client_action=requires_action,
        ))
        created["phases"] += 1
    await session.flush()

    existing_services = set((await session.execute(select(ServiceType.code))).scalars().all())
    for index, (code, display_name, phase_keys) in enumerate(DEFAULT_SERVICES):
        if code in existing_services:
            continue
        session.add(ServiceType(
            code=code,
            display_name=display_name,
            default_phase_keys=phase_keys,
            sort_order=index,
        ))
        created["services"] += 1

    existing_actions = {
        tuple(row)
        for row in await session.execute(
            select(RequiredAction.phase_key, RequiredAction.action_key)
        )
    }
    for phase_key, actions in DEFAULT_ACTIONS.items():
        for index, (action_key, description, action_type) in enumerate(actions):
            if (phase_key, action_key) in existing_actions:
                continue
            session.add(RequiredAction(
                phase_key=phase_key,
                action_key=action_key,
                description=description,
                action_type=action_type,
                sort_order=index,
            ))
            created["actions"] += 1

    existing_rules = {
        tuple(row)
        for row in await session.execute(
            select(AutomationRule.from_phase_key, AutomationRule.to_phase_key)
        )
    }
    for name, from_key, to_key, rule_type, auto_advance, stuck_days, reminder_days in DEFAULT_RULES:
        if (from_key, to_key) in existing_rules:
            continue
        session.add(AutomationRule(
            name=name,
            from_phase_key=from_key,
            to_phase_key=to_key,
            rule_type=rule_type,
            auto_advance=auto_advance,
            stuck_after_days=stuck_days,
            reminder_after_days=reminder_days,
        ))
        created["rules"] += 1

    await session.flush()
    logger.info(f"Seeded catalog: {created}")
    return created
