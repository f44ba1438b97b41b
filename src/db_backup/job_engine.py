from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Protocol

LOG = logging.getLogger(__name__)

STAGE_DUMP = "dump"
STAGE_UPLOAD = "upload"
STAGE_DELETE = "delete"

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


class BackupStageError(Exception):
    """Raised by collaborators to signal that one pipeline stage failed.

    Collaborators that do not know which project they work for leave
    ``project`` unset; the job engine fills it in.
    """

    stage = ""

    def __init__(self, detail: str, project: Optional[str] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.project = project

    def __str__(self) -> str:
        if self.project:
            return f"{self.stage} failed for {self.project}: {self.detail}"
        return f"{self.stage} failed: {self.detail}"


class DumpFailure(BackupStageError):
    stage = STAGE_DUMP


class UploadFailure(BackupStageError):
    stage = STAGE_UPLOAD


class DeleteFailure(BackupStageError):
    stage = STAGE_DELETE


_STAGE_ERRORS = {
    STAGE_DUMP: DumpFailure,
    STAGE_UPLOAD: UploadFailure,
    STAGE_DELETE: DeleteFailure,
}


@dataclass(frozen=True)
class BackupJob:
    project_name: str
    connection_string: str
    local_path: Path
    remote_key: str


@dataclass
class JobResult:
    project: str
    status: str
    started_at: datetime
    completed_at: datetime
    failed_stage: Optional[str] = None
    error: str = ""
    cleanup_error: str = ""
    local_path: Optional[Path] = None
    remote_key: str = ""

    @property
    def success(self) -> bool:
        return self.status != STATUS_FAILED

    @property
    def skipped(self) -> bool:
        return self.status == STATUS_SKIPPED

    def describe_failure(self) -> str:
        return f"{self.project} ({self.failed_stage}): {self.error}"


class Dumper(Protocol):
    def dump(self, local_path: Path, connection_string: str, project_label: str) -> None:
        ...


class Uploader(Protocol):
    def upload(self, local_path: Path, remote_key: str) -> None:
        ...


class FileRemover(Protocol):
    def remove(self, local_path: Path) -> None:
        ...


class JobEngine:
    """Runs one job's dump -> upload -> delete pipeline.

    Stages run strictly in order and a failed dump or upload abandons the job.
    A failed delete is logged and recorded as ``cleanup_error`` but leaves an
    uploaded backup counted as a success.
    """

    def __init__(self, dumper: Dumper, uploader: Uploader, remover: FileRemover) -> None:
        self._dumper = dumper
        self._uploader = uploader
        self._remover = remover

    def run(self, job: BackupJob) -> JobResult:
        started_at = datetime.utcnow()
        project = job.project_name

        try:
            self._run_stage(
                STAGE_DUMP,
                project,
                lambda: self._dumper.dump(job.local_path, job.connection_string, project),
            )
            self._run_stage(
                STAGE_UPLOAD,
                project,
                lambda: self._uploader.upload(job.local_path, job.remote_key),
            )
        except BackupStageError as exc:
            LOG.error("Backup of %s failed during %s: %s", project, exc.stage, exc.detail)
            return self._result(job, STATUS_FAILED, started_at, failed_stage=exc.stage, error=exc.detail)

        cleanup_error = ""
        try:
            self._run_stage(STAGE_DELETE, project, lambda: self._remover.remove(job.local_path))
        except BackupStageError as exc:
            LOG.warning("Could not remove local archive %s for %s: %s", job.local_path, project, exc.detail)
            cleanup_error = exc.detail

        return self._result(job, STATUS_SUCCESS, started_at, cleanup_error=cleanup_error)

    @staticmethod
    def skipped(project: str, reason: str) -> JobResult:
        now = datetime.utcnow()
        return JobResult(project=project, status=STATUS_SKIPPED, started_at=now, completed_at=now, error=reason)

    @staticmethod
    def _run_stage(stage: str, project: str, call: Callable[[], None]) -> None:
        try:
            call()
        except BackupStageError as exc:
            if exc.stage != stage:
                raise _STAGE_ERRORS[stage](exc.detail, project=exc.project or project) from exc
            if exc.project is None:
                exc.project = project
            raise
        except Exception as exc:  # noqa: BLE001
            raise _STAGE_ERRORS[stage](str(exc) or exc.__class__.__name__, project=project) from exc

    @staticmethod
    def _result(job: BackupJob, status: str, started_at: datetime, **extra: object) -> JobResult:
        return JobResult(
            project=job.project_name,
            status=status,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            local_path=job.local_path,
            remote_key=job.remote_key,
            **extra,  # type: ignore[arg-type]
        )
