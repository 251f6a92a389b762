"""
Background jobs for the portal workflow.

- scheduler: in-process ticker driving the automation engine
- automation_cron: one-shot sweep / dedupe pruning from the command line
"""

from .automation_cron import run_automation_job
from .scheduler import AutomationScheduler

__all__ = ["AutomationScheduler", "run_automation_job"]
