"""Tests for automation rule lookup and the notification dedupe window."""

from datetime import timedelta
from uuid import uuid4

from sqlalchemy import select, update

from portal_workflow.models import AutomationRule, EventKind, NotificationDedupeRecord, RuleType
from portal_workflow.services.dedupe import DedupeStore, dedupe_key, prune_dedupe_records
from portal_workflow.services.rules import Rule, RuleKey, RuleSet, load_rules


def make_rule(from_phase, to_phase, name="rule", **kwargs) -> Rule:
    return Rule(
        key=RuleKey(from_phase, to_phase),
        name=name,
        rule_type=kwargs.pop("rule_type", RuleType.ALL_ACTIONS_COMPLETE),
        **kwargs,
    )


# =============================================================================
# TEST: RULE SET
# =============================================================================


class TestRuleSet:
    def test_exact_rule_beats_wildcard(self):
        rules = RuleSet([
            make_rule(None, "LAUNCH", name="any into launch"),
            make_rule("SIGN", "LAUNCH", name="sign-off"),
        ])

        assert rules.match("SIGN", "LAUNCH").name == "sign-off"
        assert rules.match("PAY", "LAUNCH").name == "any into launch"

    def test_no_rule(self):
        assert RuleSet([make_rule("ONB", "IDEA")]).match("IDEA", "DSGN") is None

    def test_wildcard_only_matches_its_target(self):
        rules = RuleSet([make_rule(None, "LAUNCH")])

        assert rules.match("ONB", "IDEA") is None

    def test_later_duplicate_replaces_earlier(self):
        rules = RuleSet([
            make_rule("ONB", "IDEA", name="old"),
            make_rule("ONB", "IDEA", name="new"),
        ])

        assert len(rules) == 1
        assert rules.match("ONB", "IDEA").name == "new"

    def test_manual_only_never_advances(self):
        rule = make_rule("REV", "PROD", rule_type=RuleType.MANUAL_ONLY, auto_advance=True)

        assert rule.advances_automatically is False

    def test_rule_key_str(self):
        assert str(RuleKey(None, "LAUNCH")) == "*->LAUNCH"
        assert str(RuleKey("PAY", "SIGN")) == "PAY->SIGN"


class TestLoadRules:
    async def test_loads_seeded_rules(self, session):
        rules = await load_rules(session)

        assert len(rules) == 5
        payment = rules.match("PAY", "SIGN")
        assert payment.uses_external_completion
        assert payment.reminder_after_days == 2
        assert rules.match("PROD", "LAUNCH").stuck_after_days == 14

    async def test_inactive_rules_are_skipped(self, session):
        await session.execute(
            update(AutomationRule)
            .where(AutomationRule.from_phase_key == "ONB")
            .values(is_active=False)
        )
        await session.commit()

        rules = await load_rules(session)

        assert rules.match("ONB", "IDEA") is None
        assert len(rules) == 4


# =============================================================================
# TEST: DEDUPE
# =============================================================================


class TestDedupe:
    def test_key_format(self):
        project_id = uuid4()

        assert dedupe_key(EventKind.STUCK, project_id, "REV") == f"stuck:{project_id}:REV"
        assert dedupe_key("reminder", project_id, "PAY") == f"reminder:{project_id}:PAY"

    async def test_window(self, session, clock):
        store = DedupeStore(session)
        key = dedupe_key(EventKind.STUCK, uuid4(), "REV")
        cooldown = timedelta(days=3)

        assert await store.recently_sent(key, clock.now, cooldown) is False

        await store.record(key, clock.now)
        await session.commit()

        assert await store.recently_sent(key, clock.now + timedelta(minutes=1), cooldown)
        assert await store.recently_sent(key, clock.now + timedelta(days=3), cooldown) is False

    async def test_record_overwrites(self, session, clock):
        store = DedupeStore(session)
        key = dedupe_key(EventKind.REMINDER, uuid4(), "PAY")

        await store.record(key, clock.now)
        await store.record(key, clock.now + timedelta(days=2))
        await session.commit()

        assert await store.last_sent(key) == clock.now + timedelta(days=2)
        rows = (await session.execute(select(NotificationDedupeRecord))).scalars().all()
        assert len(rows) == 1

    async def test_prune(self, session, clock):
        store = DedupeStore(session)
        old = dedupe_key(EventKind.STUCK, uuid4(), "REV")
        recent = dedupe_key(EventKind.STUCK, uuid4(), "REV")
        await store.record(old, clock.now - timedelta(days=60))
        await store.record(recent, clock.now)
        await session.commit()

        removed = await prune_dedupe_records(session, clock.now - timedelta(days=30))
        await session.commit()

        assert removed == 1
        assert await store.last_sent(old) is None
        assert await store.last_sent(recent) == clock.now
