from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from croniter import croniter
from zoneinfo import ZoneInfo

from .config import BackupConfig, ConfigurationError, SchedulerConfig, load_config
from .logger import configure_logging
from .orchestrator import BackupRunError, run_backup

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Dump configured databases and upload the archives to S3.")
    parser.add_argument(
        "--config",
        default=os.getenv("DB_BACKUP_CONFIG"),
        help="Optional YAML configuration file; environment variables override its values.",
    )
    parser.add_argument(
        "--project",
        action="append",
        help="Project to back up (can be specified multiple times). Backs up all projects when omitted.",
    )
    parser.add_argument(
        "--list-projects",
        action="store_true",
        help="List configured projects and exit.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single backup even when a cron schedule is configured.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level (defaults to LOG_LEVEL or INFO).",
    )
    return parser.parse_args(argv)


def list_projects(config: BackupConfig) -> None:
    for index, project in enumerate(config.project_names):
        if not project:
            continue
        marker = "" if config.database_url_for(index) else " (no database URL)"
        print(f"{project}{marker}")


def run_once(config: BackupConfig, projects: Optional[List[str]]) -> int:
    try:
        summary = run_backup(config, projects)
    except BackupRunError as exc:
        for failure in exc.failures:
            logging.error("Backup of %s failed at %s stage: %s", failure.project, failure.failed_stage, failure.error)
        return EXIT_FAILED
    except ConfigurationError as exc:
        logging.error("Configuration error: %s", exc)
        return EXIT_CONFIG

    for result in summary.succeeded:
        logging.info(
            "Backup of %s succeeded in %.2fs",
            result.project,
            (result.completed_at - result.started_at).total_seconds(),
        )
    return EXIT_OK


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"))

    config_path = Path(args.config).expanduser() if args.config else None
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        logging.error("Configuration error: %s", exc)
        return EXIT_CONFIG

    if not args.log_level:
        configure_logging(config.logging.level)

    if args.list_projects:
        list_projects(config)
        return EXIT_OK

    projects = args.project if args.project else None
    if config.scheduler and not args.once:
        return run_with_scheduler(config_path=config_path, initial_config=config, projects=projects)
    return run_once(config, projects)


def run_with_scheduler(
    config_path: Optional[Path],
    initial_config: BackupConfig,
    projects: Optional[List[str]],
    stop_event: Optional[threading.Event] = None,
) -> int:
    """Back up on the configured cron schedule until signalled or unscheduled.

    Configuration is re-read before every run so project lists and credentials
    can change without a restart. A failed run is logged and the loop carries on
    to the next scheduled slot.
    """
    stop_event = stop_event or threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        logging.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

    config = initial_config
    scheduler = _require_scheduler(config.scheduler)
    zone = ZoneInfo(scheduler.timezone)
    next_run = datetime.now(zone) if scheduler.run_on_startup else _next_run(scheduler.cron, datetime.now(zone))
    logging.info(
        "Scheduling backups of %s with '%s' (%s); first run at %s",
        ", ".join(projects or config.named_projects),
        scheduler.cron,
        scheduler.timezone,
        next_run.isoformat(),
    )

    runs = 0
    consecutive_failures = 0
    while not stop_event.is_set():
        now = datetime.now(zone)
        if now < next_run:
            stop_event.wait(min((next_run - now).total_seconds(), 60))
            continue

        config = _reload_config(config_path, config)
        if not config.scheduler:
            logging.info("Scheduler removed from configuration; exiting loop")
            break
        scheduler = config.scheduler
        zone = ZoneInfo(scheduler.timezone)

        runs += 1
        exit_code = run_once(config, projects)
        if exit_code == EXIT_OK:
            consecutive_failures = 0
        else:
            consecutive_failures += 1
            logging.warning(
                "Scheduled run #%d failed (exit code %s); %d consecutive failed run(s)",
                runs,
                exit_code,
                consecutive_failures,
            )

        next_run = _next_run(scheduler.cron, datetime.now(zone))
        logging.info("Next run scheduled for %s", next_run.isoformat())

    logging.info("Scheduler stopped after %d run(s)", runs)
    return EXIT_OK


def _reload_config(config_path: Optional[Path], current: BackupConfig) -> BackupConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        logging.error("Failed to reload configuration: %s; continuing with previous settings", exc)
        return current


def _require_scheduler(scheduler: Optional[SchedulerConfig]) -> SchedulerConfig:
    if not scheduler:
        raise ValueError("Scheduler configuration is required")
    return scheduler


def _next_run(cron_expression: str, reference: datetime) -> datetime:
    return croniter(cron_expression, reference).get_next(datetime)


if __name__ == "__main__":
    sys.exit(main())
