"""
Automation Cron Job: run one automation sweep from the command line.

Use this when the API process does not host the scheduler (for example a
platform cron trigger), or to prune old notification dedupe records.

Alerting:
- A crashed run alerts at once (critical)
- Per-project failures alert only when consecutive runs keep failing, and
  then at most once per cool-down

Typical cron schedule: * * * * * (every minute)
"""

import asyncio
import logging
import os
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.database import build_engine, build_session_factory, get_session_context
from ..services.automation_engine import AutomationConfig, AutomationEngine, TickReport
from ..services.catalog import PhaseCatalog
from ..services.dedupe import DedupeStore, prune_dedupe_records
from ..services.notification_dispatcher import OutboxDispatcher

logger = logging.getLogger(__name__)

ALERT_SOURCE = "portal-automation"

# Dedupe keys for the failure streak and its alert
FAILING_RUN_KEY = "cron:tick_failures"
FAILURE_ALERT_KEY = "cron:tick_failures_alerted"


# =============================================================================
# ALERTING
# =============================================================================


def slack_alert_body(title: str, message: str, severity: str, details: dict) -> dict:
    lines = [f"*{title}*", message]
    lines.extend(f"*{k}*: {v}" for k, v in details.items())
    return {
        "attachments": [{
            "color": "#dc2626" if severity == "critical" else "#f59e0b",
            "blocks": [
                {"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}},
                {
                    "type": "context",
                    "elements": [{
                        "type": "mrkdwn",
                        "text": f"Severity: *{severity.upper()}* | Source: {ALERT_SOURCE}",
                    }],
                },
            ],
        }],
    }


def webhook_alert_body(title: str, message: str, severity: str, details: dict) -> dict:
    return {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": ALERT_SOURCE,
        "details": details,
    }


class CronAlerter:
    """
    Posts job alerts to a Slack incoming webhook and/or a generic webhook
    (PagerDuty, Opsgenie, ...). Every alert is also logged.
    """

    def __init__(
        self,
        slack_webhook_url: str | None = None,
        webhook_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._channels = [
            (name, url, build)
            for name, url, build in (
                ("slack", slack_webhook_url, slack_alert_body),
                ("webhook", webhook_url, webhook_alert_body),
            )
            if url
        ]
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "CronAlerter":
        return cls(settings.slack_alerts_webhook_url, settings.alert_webhook_url)

    async def send(
        self,
        title: str,
        message: str,
        severity: str = "error",
        details: dict | None = None,
    ) -> list[str]:
        """Send to every configured channel; returns the channels that accepted it."""
        details = details or {}
        log_message = f"[CRON ALERT] {title}: {message}"
        if details:
            log_message += f" | Details: {details}"
        if severity == "critical":
            logger.critical(log_message)
        else:
            logger.error(log_message)

        delivered = []
        for name, url, build in self._channels:
            try:
                await self._post(url, build(title, message, severity, details))
                delivered.append(name)
            except httpx.HTTPError as e:
                logger.error(f"Failed to send {name} alert: {e}")
        return delivered

    async def _post(self, url: str, body: dict) -> None:
        if self._http_client is not None:
            response = await self._http_client.post(url, json=body, timeout=10)
            response.raise_for_status()
            return
        async with httpx.AsyncClient() as client:
            response = await client.post(url, json=body, timeout=10)
            response.raise_for_status()


async def alert_on_failure_streak(
    session: AsyncSession,
    alerter: CronAlerter,
    report: TickReport,
    now: datetime,
    streak_window: timedelta,
    cooldown: timedelta,
) -> bool:
    """
    Track runs with failed projects and alert once failures repeat.

    A clean run ends the streak. Returns True when an alert was sent.
    """
    dedupe = DedupeStore(session)
    if not report.errors:
        await dedupe.forget(FAILING_RUN_KEY)
        return False

    previous = await dedupe.last_sent(FAILING_RUN_KEY)
    await dedupe.record(FAILING_RUN_KEY, now)
    if previous is None or now - previous > streak_window:
        logger.warning(f"{report.failures} projects failed; alerting if the next run fails too")
        return False
    if await dedupe.recently_sent(FAILURE_ALERT_KEY, now, cooldown):
        return False

    await alerter.send(
        title="Automation Job Failing Repeatedly",
        message=(
            f"{report.failures} projects failed evaluation on consecutive runs "
            f"and will keep being retried."
        ),
        severity="warning",
        details={"errors": report.errors[:5]},
    )
    await dedupe.record(FAILURE_ALERT_KEY, now)
    return True


# =============================================================================
# JOBS
# =============================================================================


async def run_automation_job(
    database_url: str | None = None,
    config: AutomationConfig | None = None,
    prune_dedupe_days: int | None = None,
    alerter: CronAlerter | None = None,
) -> dict[str, Any]:
    """
    Run one automation tick, optionally pruning dedupe records first.

    Args:
        database_url: Overrides the configured DATABASE_URL
        config: Engine thresholds; defaults come from settings
        prune_dedupe_days: Delete dedupe records last sent more than this many days ago
        alerter: Alert channels; defaults come from settings

    Returns:
        Job result summary
    """
    settings = get_settings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    alerter = alerter or CronAlerter.from_settings(settings)

    start_time = datetime.now(timezone.utc)
    logger.info(f"Starting automation job at {start_time.isoformat()}")

    engine = build_engine(settings)
    session_factory = build_session_factory(engine)

    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "dedupe_pruned": 0,
        "tick": None,
        "errors": [],
        "alerted": False,
    }

    try:
        if prune_dedupe_days is not None:
            cutoff = start_time - timedelta(days=prune_dedupe_days)
            async with get_session_context(session_factory) as session:
                results["dedupe_pruned"] = await prune_dedupe_records(session, cutoff)

        automation = AutomationEngine(
            session_factory,
            OutboxDispatcher(session_factory, settings.realtime_gateway_url),
            catalog=PhaseCatalog(
                session_factory,
                first_phase_key=settings.first_phase_key,
                last_phase_key=settings.last_phase_key,
                cache_ttl_seconds=settings.catalog_cache_ttl_seconds,
            ),
            config=config or AutomationConfig.from_settings(settings),
        )
        await automation.start()
        report = await automation.run_tick()
        results["tick"] = report.to_dict()
        results["errors"].extend(report.errors)

        async with get_session_context(session_factory) as session:
            results["alerted"] = await alert_on_failure_streak(
                session,
                alerter,
                report,
                datetime.now(timezone.utc),
                streak_window=timedelta(minutes=settings.alert_failure_streak_minutes),
                cooldown=timedelta(minutes=settings.alert_cooldown_minutes),
            )

    except Exception as e:
        error_msg = f"Automation job failed: {str(e)}"
        logger.error(error_msg)
        results["errors"].append(error_msg)

        await alerter.send(
            title="Automation Cron Job Failed",
            message="The phase automation job crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],
                "started_at": results["started_at"],
            },
        )
        raise

    finally:
        await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Automation job completed in {results['duration_seconds']:.2f}s "
        f"with {len(results['errors'])} project failures"
    )
    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the automation job."""
    import argparse

    parser = argparse.ArgumentParser(description="Run one phase automation sweep")
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="Database connection string (defaults to settings)",
    )
    parser.add_argument(
        "--stuck-days",
        type=int,
        default=None,
        help="Override the default days in phase before a project is stuck",
    )
    parser.add_argument(
        "--prune-dedupe-days",
        type=int,
        default=None,
        help="Also delete notification dedupe records older than this many days",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = AutomationConfig.from_settings(get_settings())
    if args.stuck_days is not None:
        config.stuck_after_days = args.stuck_days

    try:
        results = asyncio.run(run_automation_job(
            database_url=args.database_url,
            config=config,
            prune_dedupe_days=args.prune_dedupe_days,
        ))
        print(f"Job completed: {results}")
    except Exception as e:
        print(f"Job failed: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
