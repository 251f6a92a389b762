"""
Automation rules keyed by transition shape.

A rule applies to the transition ``current phase -> next phase``. Its key is
``RuleKey(from_phase, to_phase)`` where ``from_phase=None`` is the explicit
wildcard "from any phase". Lookup prefers the exact key over the wildcard.
"""

import logging
from dataclasses import dataclass
from typing import Any, NamedTuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AutomationRule, RuleType

logger = logging.getLogger(__name__)


class RuleKey(NamedTuple):
    from_phase: str | None
    to_phase: str

    def __str__(self) -> str:
        return f"{self.from_phase or '*'}->{self.to_phase}"


@dataclass(frozen=True)
class Rule:
    """Immutable copy of an AutomationRule row."""
    key: RuleKey
    name: str
    rule_type: RuleType
    auto_advance: bool = False
    stuck_after_days: int | None = None
    reminder_after_days: int | None = None
    description: str | None = None

    @property
    def advances_automatically(self) -> bool:
        return self.auto_advance and self.rule_type != RuleType.MANUAL_ONLY

    @property
    def uses_external_completion(self) -> bool:
        return self.rule_type == RuleType.EXTERNAL_COMPLETION

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "from_phase_key": self.key.from_phase,
            "to_phase_key": self.key.to_phase,
            "rule_type": self.rule_type.value,
            "auto_advance": self.auto_advance,
            "stuck_after_days": self.stuck_after_days,
            "reminder_after_days": self.reminder_after_days,
            "description": self.description,
        }


class RuleSet:
    """Lookup table of active rules."""

    def __init__(self, rules: list[Rule] | None = None):
        self._rules: dict[RuleKey, Rule] = {}
        for rule in rules or []:
            if rule.key in self._rules:
                logger.warning(
                    f"Duplicate automation rule for {rule.key}: "
                    f"'{rule.name}' replaces '{self._rules[rule.key].name}'"
                )
            self._rules[rule.key] = rule

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self):
        return iter(self._rules.values())

    def match(self, from_phase: str, to_phase: str) -> Rule | None:
        """Exact (from, to) rule first, then the (*, to) wildcard."""
        exact = self._rules.get(RuleKey(from_phase, to_phase))
        if exact is not None:
            return exact
        return self._rules.get(RuleKey(None, to_phase))


async def load_rules(session: AsyncSession) -> RuleSet:
    result = await session.execute(
        select(AutomationRule)
        .where(AutomationRule.is_active.is_(True))
        .order_by(AutomationRule.created_at.asc())
    )
    return RuleSet([
        Rule(
            key=RuleKey(row.from_phase_key, row.to_phase_key),
            name=row.name,
            rule_type=row.rule_type,
            auto_advance=row.auto_advance,
            stuck_after_days=row.stuck_after_days,
            reminder_after_days=row.reminder_after_days,
            description=row.description,
        )
        for row in result.scalars().all()
    ])
