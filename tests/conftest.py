"""
Shared pytest fixtures: configuration builders and recording collaborators.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from db_backup.config import BackupConfig

BACKUP_ENV_VARS = (
    "BACKUP_DATABASE_URLS",
    "PROJECT_NAMES",
    "AWS_S3_BUCKET",
    "AWS_S3_REGION",
    "AWS_S3_ENDPOINT",
    "BACKUP_MAX_CONCURRENCY",
    "BACKUP_TEMP_DIR",
    "PG_DUMP_PATH",
    "BACKUP_CRON_SCHEDULE",
    "BACKUP_TIMEZONE",
    "RUN_ON_STARTUP",
    "LOG_LEVEL",
    "DB_BACKUP_CONFIG",
)


class CallLog:
    """Thread-safe record of (stage, subject) calls across all fakes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls: List[Tuple[str, str]] = []

    def record(self, stage: str, subject: str) -> None:
        with self._lock:
            self.calls.append((stage, subject))

    def stages_for(self, subject: str) -> List[str]:
        return [stage for stage, name in self.calls if subject in name]


class RecordingDumper:
    def __init__(self, log: CallLog, failures: Optional[Dict[str, Exception]] = None) -> None:
        self.log = log
        self.failures = failures or {}
        self.connection_strings: Dict[str, str] = {}

    def dump(self, local_path: Path, connection_string: str, project_label: str) -> None:
        self.log.record("dump", project_label)
        self.connection_strings[project_label] = connection_string
        if project_label in self.failures:
            raise self.failures[project_label]
        local_path.write_bytes(b"archive")


class RecordingUploader:
    def __init__(self, log: CallLog, failures: Optional[Dict[str, Exception]] = None) -> None:
        self.log = log
        self.failures = failures or {}
        self.uploaded: Dict[str, bytes] = {}

    def upload(self, local_path: Path, remote_key: str) -> None:
        self.log.record("upload", remote_key)
        for project, error in self.failures.items():
            if remote_key.startswith(f"backup-{project}-"):
                raise error
        self.uploaded[remote_key] = local_path.read_bytes()


class RecordingRemover:
    def __init__(self, log: CallLog, error: Optional[Exception] = None) -> None:
        self.log = log
        self.error = error

    def remove(self, local_path: Path) -> None:
        self.log.record("delete", local_path.name)
        if self.error is not None:
            raise self.error
        local_path.unlink()


@pytest.fixture
def call_log() -> CallLog:
    return CallLog()


@pytest.fixture
def make_config(tmp_path: Path):
    def _make(
        projects: Sequence[str],
        urls: Sequence[str],
        **overrides: object,
    ) -> BackupConfig:
        data = {
            "project_names": list(projects),
            "database_urls": list(urls),
            "storage": {"bucket": "backups", "region": "eu-west-1"},
            "temp_dir": tmp_path,
        }
        data.update(overrides)
        return BackupConfig.model_validate(data)

    return _make


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in BACKUP_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
