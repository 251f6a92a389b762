"""Tests for the one-shot automation job and its alerting."""

import json
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from portal_workflow.jobs.automation_cron import (
    FAILING_RUN_KEY,
    FAILURE_ALERT_KEY,
    CronAlerter,
    run_automation_job,
)
from portal_workflow.models import EmailOutbox, InAppNotification, PhaseTracking
from portal_workflow.services.dedupe import DedupeStore

SLACK_URL = "https://hooks.slack.example/services/T000/B000"
WEBHOOK_URL = "https://alerts.example.com/hook"


@pytest.fixture
def alert_requests() -> list[httpx.Request]:
    return []


@pytest.fixture
async def alerter(alert_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        alert_requests.append(request)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        yield CronAlerter(SLACK_URL, WEBHOOK_URL, http_client=http_client)


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'workflow.db'}"


async def break_project(session_factory, project_id):
    async with session_factory() as session:
        await session.execute(
            update(PhaseTracking)
            .where(PhaseTracking.project_id == project_id)
            .values(current_phase_key="GHOST", phase_keys=["ONB", "GHOST", "LAUNCH"])
        )
        await session.commit()


# =============================================================================
# TEST: JOB
# =============================================================================


class TestRunAutomationJob:
    async def test_runs_one_tick_against_the_given_database(
        self, database_url, session_factory, make_project, complete_action, alerter,
        alert_requests,
    ):
        project_id = await make_project()
        await complete_action(project_id, "ONB", "intake_form")

        results = await run_automation_job(database_url=database_url, alerter=alerter)

        assert results["errors"] == []
        assert results["alerted"] is False
        assert results["tick"]["projects_evaluated"] == 1
        assert results["tick"]["advanced"] == 1
        assert alert_requests == []

        async with session_factory() as session:
            tracking = (await session.execute(
                select(PhaseTracking).where(PhaseTracking.project_id == project_id)
            )).scalar_one()
            notifications = (await session.execute(
                select(func.count()).select_from(InAppNotification)
            )).scalar_one()
            emails = (await session.execute(
                select(EmailOutbox.template_kind)
            )).scalars().all()

        assert tracking.current_phase_key == "IDEA"
        assert notifications == 1
        assert emails == ["phase_advanced"]

    async def test_prunes_old_dedupe_records(
        self, database_url, session_factory, seeded, clock, alerter
    ):
        async with session_factory() as session:
            await DedupeStore(session).record("stuck:old:REV", clock.now - timedelta(days=400))
            await session.commit()

        results = await run_automation_job(
            database_url=database_url,
            prune_dedupe_days=30,
            alerter=alerter,
        )

        assert results["dedupe_pruned"] == 1
        assert results["tick"]["projects_evaluated"] == 0


# =============================================================================
# TEST: ALERTING
# =============================================================================


class TestCronAlerting:
    async def test_crash_alerts_every_channel_and_reraises(
        self, tmp_path, alerter, alert_requests
    ):
        unreachable = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'workflow.db'}"

        with pytest.raises(OperationalError):
            await run_automation_job(database_url=unreachable, alerter=alerter)

        assert [str(r.url) for r in alert_requests] == [SLACK_URL, WEBHOOK_URL]
        slack = json.loads(alert_requests[0].content)
        assert "*Automation Cron Job Failed*" in slack["attachments"][0]["blocks"][0]["text"]["text"]
        assert slack["attachments"][0]["color"] == "#dc2626"
        webhook = json.loads(alert_requests[1].content)
        assert webhook["severity"] == "critical"
        assert webhook["source"] == "portal-automation"
        assert "error" in webhook["details"]

    async def test_single_failing_run_does_not_alert(
        self, database_url, session_factory, make_project, alerter, alert_requests
    ):
        await break_project(session_factory, await make_project())

        results = await run_automation_job(database_url=database_url, alerter=alerter)

        assert len(results["errors"]) == 1
        assert results["alerted"] is False
        assert alert_requests == []

    async def test_repeated_failures_alert_once_per_cooldown(
        self, database_url, session_factory, make_project, alerter, alert_requests
    ):
        broken = await make_project()
        await break_project(session_factory, broken)

        first = await run_automation_job(database_url=database_url, alerter=alerter)
        second = await run_automation_job(database_url=database_url, alerter=alerter)
        third = await run_automation_job(database_url=database_url, alerter=alerter)

        assert [first["alerted"], second["alerted"], third["alerted"]] == [False, True, False]
        assert len(alert_requests) == 2
        webhook = json.loads(alert_requests[1].content)
        assert webhook["title"] == "Automation Job Failing Repeatedly"
        assert webhook["severity"] == "warning"
        assert str(broken) in webhook["details"]["errors"][0]

    async def test_clean_run_ends_the_failure_streak(
        self, database_url, session_factory, make_project, alerter, alert_requests
    ):
        broken = await make_project()
        await break_project(session_factory, broken)
        await run_automation_job(database_url=database_url, alerter=alerter)

        async with session_factory() as session:
            await session.execute(
                update(PhaseTracking)
                .where(PhaseTracking.project_id == broken)
                .values(current_phase_key="ONB", phase_keys=["ONB", "LAUNCH"])
            )
            await session.commit()
        await run_automation_job(database_url=database_url, alerter=alerter)

        async with session_factory() as session:
            store = DedupeStore(session)
            assert await store.last_sent(FAILING_RUN_KEY) is None
            assert await store.last_sent(FAILURE_ALERT_KEY) is None
        assert alert_requests == []

    async def test_failed_channel_does_not_stop_the_other(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "hooks.slack.example":
                return httpx.Response(500)
            return httpx.Response(202)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
            alerter = CronAlerter(SLACK_URL, WEBHOOK_URL, http_client=http_client)
            delivered = await alerter.send("Title", "Message", details={"k": "v"})

        assert delivered == ["webhook"]

    async def test_no_channels_configured_only_logs(self):
        assert await CronAlerter().send("Title", "Message", severity="critical") == []
