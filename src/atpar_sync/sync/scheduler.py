"""Schedule evaluation and the ``atpar-sync-scheduler`` command.

Each team's ``schedule`` says when a run is due (UTC):

- ``manual``  -- never started by the scheduler.
- ``hourly``  -- every hour at ``minute``.
- ``daily``   -- every day at ``hour``:``minute``.

A team is due when the scheduler has not started it since the latest
slot.  The start time is kept in the team document, so webhook and manual
runs never hide it.  Due teams run concurrently, bounded by
``max_parallel_runs``; runs for the same team are serialized by the
orchestrator's lock anyway.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta, timezone

from .. import __version__
from ..config_loader import ensure_config
from ..config_schema import ScheduleConfig
from ..core.async_utils import gather_limited, init_semaphore
from ..logger import setup_logging
from ..service import Service, build_service
from .models import RunResult
from .orchestrator import SyncOrchestrator
from .repository import JsonFileRepository

logger = logging.getLogger(__name__)

SCHEDULE_TRIGGER = "schedule"


def latest_slot(schedule: ScheduleConfig, now: datetime) -> datetime | None:
    """Return the most recent slot at or before *now*, or ``None`` if manual."""
    if schedule.kind == "hourly":
        slot = now.replace(minute=schedule.minute, second=0, microsecond=0)
        return slot if slot <= now else slot - timedelta(hours=1)
    if schedule.kind == "daily":
        slot = now.replace(
            hour=schedule.hour, minute=schedule.minute, second=0, microsecond=0
        )
        return slot if slot <= now else slot - timedelta(days=1)
    return None


def is_due(
    schedule: ScheduleConfig,
    last_started_at: datetime | None,
    now: datetime,
) -> bool:
    slot = latest_slot(schedule, now)
    if slot is None:
        return False
    return last_started_at is None or last_started_at < slot


def due_teams(
    repository: JsonFileRepository, now: datetime | None = None
) -> list[str]:
    now = now or datetime.now(timezone.utc)
    due = []
    for team_id in repository.team_ids():
        team = repository.load_config(team_id)
        if is_due(team.schedule, repository.last_scheduled_at(team_id), now):
            due.append(team_id)
    return due


async def run_scheduled(
    orchestrator: SyncOrchestrator,
    repository: JsonFileRepository,
    now: datetime | None = None,
) -> dict[str, RunResult | BaseException]:
    """Start a run for every due team and wait for all of them.

    Returns:
        ``{team_id: RunResult or the exception the run raised}``.
    """
    now = now or datetime.now(timezone.utc)
    teams = due_teams(repository, now)
    if not teams:
        logger.debug("No teams due")
        return {}

    logger.info("Starting scheduled runs for: %s", ", ".join(teams))
    for team_id in teams:
        repository.mark_scheduled(team_id, now)
    results = await gather_limited(
        [orchestrator.run(t, trigger=SCHEDULE_TRIGGER) for t in teams],
        return_exceptions=True,
    )
    outcome: dict[str, RunResult | BaseException] = {}
    for team_id, result in zip(teams, results):
        if isinstance(result, BaseException):
            logger.error(
                "Scheduled run for team %s failed: %s",
                team_id,
                result,
                extra={"team_id": team_id},
            )
        outcome[team_id] = result
    return outcome


async def _loop(service: Service, once: bool, interval: float) -> None:
    init_semaphore(service.config.max_parallel_runs)
    while True:
        await run_scheduled(service.orchestrator, service.repository)
        if once:
            return
        await asyncio.sleep(interval)


def main(argv: list[str] | None = None) -> None:
    """Entry point for ``atpar-sync-scheduler``."""
    parser = argparse.ArgumentParser(
        description="Start due Azure DevOps <-> Notion sync runs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Evaluate schedules once and exit (e.g. from cron)
  atpar-sync-scheduler --once

  # Keep running, checking every 5 minutes
  atpar-sync-scheduler --interval 300

  # Write a starter .atpar/config.yml
  atpar-sync-scheduler --init-config
        """,
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Evaluate schedules once, wait for the runs, and exit",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=60.0,
        help="Seconds between schedule evaluations (default: 60)",
    )
    parser.add_argument(
        "--state-dir",
        help="Override the state directory (takes precedence over ATPAR_STATE_DIR)",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Create a starter config file if none exists, then exit",
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"atpar-sync version {__version__}",
    )
    args = parser.parse_args(argv)

    if args.init_config:
        print(f"Config file: {ensure_config()}", file=sys.stderr)
        return

    overrides = {}
    if args.state_dir:
        overrides["state_dir"] = args.state_dir
    if args.debug:
        overrides["debug"] = True

    try:
        service = build_service(overrides)
    except ValueError as exc:
        print(f"ERROR: Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    setup_logging(
        mode="cli",
        debug=service.config.debug,
        log_file=args.log_file or service.unified.logging.file,
        log_format=service.unified.logging.format,
        level=service.unified.logging.level,
    )

    try:
        asyncio.run(_loop(service, args.once, args.interval))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)


if __name__ == "__main__":
    main()
