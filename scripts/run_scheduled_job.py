#!/usr/bin/env python3
"""
Run the daily vocabulary job for GitHub Actions execution.

Schedules every active subscriber for the day, then dispatches whatever is
due, writing a step summary when running inside a workflow.
"""

import argparse
import os
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, Optional

# Add the source tree to the Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv
from loguru import logger

from vocab_scheduler.main import DEFAULT_CONFIG_FILE, VocabSchedulerApplication

PROJECT_ENV_FILE: Path = Path(__file__).parent.parent / ".env"


def add_actions_console(log_level: str) -> None:
    """Add a console handler that groups records in the GitHub Actions log."""
    logger.add(
        sys.stdout,
        level=log_level,
        format="::group::{level} - {time:HH:mm:ss}\n{message}\n::endgroup::",
        colorize=False
    )


def write_step_summary(summary: Dict[str, Any]) -> None:
    summary_file = os.getenv('GITHUB_STEP_SUMMARY')
    if not summary_file:
        return

    scheduling: Dict[str, Any] = summary["scheduling"]
    dispatch: Dict[str, Any] = summary["dispatch"]
    with open(summary_file, 'a') as f:
        f.write("# Vocabulary Delivery Summary\n\n")
        f.write(f"- **Date**: {scheduling['schedule_date']}\n")
        f.write(f"- **Users Scheduled**: {scheduling['users_scheduled']}\n")
        f.write(f"- **Messages Scheduled**: {scheduling['messages_scheduled']}\n")
        f.write(f"- **Scheduling Failures**: {len(scheduling['failed'])}\n")
        f.write(f"- **Messages Sent**: {dispatch['sent']}\n")
        f.write(f"- **Send Failures**: {dispatch['failed']}\n")
        f.write(f"- **Expired**: {dispatch['expired']}\n")
        f.write(f"- **Sent, Not Recorded**: {dispatch['unrecorded']}\n")


def main() -> None:
    """Main execution function."""

    parser = argparse.ArgumentParser(description="Run the daily vocabulary scheduling and dispatch job")
    parser.add_argument('--config', type=Path, default=DEFAULT_CONFIG_FILE, help='Encrypted configuration file')
    parser.add_argument('--db', type=Path, help='Override the database path')
    parser.add_argument('--date', help='Local day to schedule (YYYY-MM-DD)')
    parser.add_argument('--skip-dispatch', action='store_true', help='Only create the day\'s messages')
    parser.add_argument('--log-level', default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])

    args = parser.parse_args()

    # Workflow secrets win over a local .env
    load_dotenv(PROJECT_ENV_FILE, override=False)
    master_password = os.getenv('MASTER_PASSWORD')
    if not master_password:
        print("MASTER_PASSWORD environment variable required", file=sys.stderr)
        sys.exit(1)

    try:
        schedule_date: Optional[date] = date.fromisoformat(args.date) if args.date else None

        application = VocabSchedulerApplication(args.config, args.db, console_logging=False)
        application.initialize(master_password)
        add_actions_console(args.log_level)

        logger.info("Starting scheduled vocabulary job")

        scheduling = application.run_scheduling(schedule_date)
        summary: Dict[str, Any] = {"scheduling": scheduling.to_dict()}
        logger.info(f"Scheduling finished: {summary['scheduling']}")

        if args.skip_dispatch:
            logger.info("Dispatch skipped")
            return

        dispatch = application.run_dispatch()
        summary["dispatch"] = dispatch.to_dict()
        logger.info(f"Dispatch finished: {summary['dispatch']}")

        write_step_summary(summary)

        if scheduling.failed or dispatch.failed or dispatch.unrecorded:
            logger.error("Job finished with failures - check logs for details")
            sys.exit(1)

        logger.info("Job execution completed successfully")

    except Exception as e:
        logger.error(f"Scheduled job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
