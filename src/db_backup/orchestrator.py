from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from .adapters import build_adapters
from .config import BackupConfig, ConfigurationError
from .job_engine import BackupJob, Dumper, FileRemover, JobEngine, JobResult, Uploader

LOG = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_UNSAFE_TIMESTAMP_CHARS = re.compile(r"[:.]+")


class BackupRunError(Exception):
    """Raised when one or more jobs of a run failed."""

    def __init__(self, failures: Sequence[JobResult]) -> None:
        details = "; ".join(result.describe_failure() for result in failures)
        super().__init__(f"{len(failures)} backup job(s) failed: {details}")
        self.failures = list(failures)


@dataclass
class RunSummary:
    timestamp: str
    results: List[JobResult] = field(default_factory=list)

    @property
    def failures(self) -> List[JobResult]:
        return [result for result in self.results if not result.success]

    @property
    def skipped(self) -> List[JobResult]:
        return [result for result in self.results if result.skipped]

    @property
    def succeeded(self) -> List[JobResult]:
        return [result for result in self.results if result.success and not result.skipped]

    @property
    def success(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise BackupRunError(self.failures)


def build_timestamp(moment: datetime) -> str:
    """Render ``moment`` as a filename- and key-safe UTC ISO-8601 token.

    ``2024-05-01T03:00:00.123Z`` becomes ``2024-05-01T03-00-00-123Z``.
    """
    moment = moment.astimezone(timezone.utc) if moment.tzinfo else moment
    iso = f"{moment.strftime('%Y-%m-%dT%H:%M:%S')}.{moment.microsecond // 1000:03d}Z"
    return _UNSAFE_TIMESTAMP_CHARS.sub("-", iso)


def archive_name(project: str, timestamp: str) -> str:
    return f"backup-{project}-{timestamp}.tar.gz"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupOrchestrator:
    """Backs up every configured project concurrently and waits for all of them."""

    def __init__(
        self,
        config: BackupConfig,
        dumper: Dumper,
        uploader: Uploader,
        remover: FileRemover,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config
        self._engine = JobEngine(dumper=dumper, uploader=uploader, remover=remover)
        self._clock = clock or _utcnow

    def run(self, projects: Optional[Sequence[str]] = None) -> RunSummary:
        LOG.info("Initiating DB backup(s)...")
        timestamp = build_timestamp(self._clock())
        jobs, skipped = self.plan(timestamp, projects)

        results = {result.project: result for result in skipped}
        if jobs:
            workers = self._config.max_concurrency or len(jobs)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="backup") as pool:
                futures = [(job, pool.submit(self._engine.run, job)) for job in jobs]
                for job, future in futures:
                    results[job.project_name] = future.result()

        ordered = [results[name] for name in self._selected_projects(projects) if name in results]
        summary = RunSummary(timestamp=timestamp, results=ordered)
        LOG.info(
            "DB backup complete: %d succeeded, %d failed, %d skipped",
            len(summary.succeeded),
            len(summary.failures),
            len(summary.skipped),
        )
        return summary

    def plan(
        self, timestamp: str, projects: Optional[Sequence[str]] = None
    ) -> Tuple[List[BackupJob], List[JobResult]]:
        jobs: List[BackupJob] = []
        skipped: List[JobResult] = []
        selected = set(self._selected_projects(projects))

        extra_urls = len(self._config.database_urls) - len(self._config.project_names)
        if extra_urls > 0:
            LOG.warning("Ignoring %d database URL(s) without a matching project name", extra_urls)

        for index, project in enumerate(self._config.project_names):
            if not project:
                LOG.debug("Ignoring blank project name at position %d", index + 1)
                continue
            if project not in selected:
                continue
            database_url = self._config.database_url_for(index)
            if not database_url:
                LOG.info("No database URL found for project: %s", project)
                skipped.append(JobEngine.skipped(project, "no database URL configured"))
                continue

            filename = archive_name(project, timestamp)
            jobs.append(
                BackupJob(
                    project_name=project,
                    connection_string=database_url,
                    local_path=self._config.temp_dir / filename,
                    remote_key=filename,
                )
            )
        return jobs, skipped

    def _selected_projects(self, projects: Optional[Sequence[str]]) -> List[str]:
        if not projects:
            return self._config.named_projects
        missing = set(projects) - set(self._config.named_projects)
        if missing:
            raise ConfigurationError(f"Unknown project(s) requested: {', '.join(sorted(missing))}")
        return [name for name in self._config.named_projects if name in set(projects)]


def run_backup(
    config: BackupConfig,
    projects: Optional[Sequence[str]] = None,
    orchestrator: Optional[BackupOrchestrator] = None,
) -> RunSummary:
    """Run one backup of ``config`` and raise ``BackupRunError`` if any job failed."""
    if orchestrator is None:
        try:
            dumper, uploader, remover = build_adapters(config)
        except Exception as exc:  # noqa: BLE001
            raise ConfigurationError(f"Could not set up backup adapters: {exc}") from exc
        orchestrator = BackupOrchestrator(config=config, dumper=dumper, uploader=uploader, remover=remover)

    summary = orchestrator.run(projects)
    summary.raise_for_failures()
    return summary
