from __future__ import annotations

from typing import Tuple

from db_backup.config import BackupConfig
from db_backup.job_engine import Dumper, FileRemover, Uploader

from .filesystem import LocalFileRemover, format_size
from .postgres import PgDumpDumper
from .s3 import S3Uploader

__all__ = [
    "LocalFileRemover",
    "PgDumpDumper",
    "S3Uploader",
    "build_adapters",
    "format_size",
]


def build_adapters(config: BackupConfig) -> Tuple[Dumper, Uploader, FileRemover]:
    config.temp_dir.mkdir(parents=True, exist_ok=True)
    uploader = S3Uploader(
        bucket=config.storage.bucket,
        region=config.storage.region,
        endpoint=config.storage.endpoint,
    )
    return PgDumpDumper(executable=config.pg_dump_path), uploader, LocalFileRemover()
