"""Scheduled PostgreSQL-to-S3 backup package."""

from __future__ import annotations

from .config import BackupConfig, load_config  # noqa: F401
from .orchestrator import BackupOrchestrator, BackupRunError, RunSummary, run_backup  # noqa: F401
