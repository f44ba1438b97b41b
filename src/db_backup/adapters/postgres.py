from __future__ import annotations

import gzip
import logging
import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import List, Tuple

from db_backup.job_engine import DumpFailure

from .filesystem import format_size

LOG = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

# pg_dump can report failures on stderr while still exiting 0.
ERROR_PATTERN = re.compile(r"error", re.IGNORECASE)


class PgDumpDumper:
    """Writes a gzip-compressed ``pg_dump --format=tar`` archive of one database."""

    def __init__(self, executable: str = "pg_dump") -> None:
        self._executable = executable

    def dump(self, local_path: Path, connection_string: str, project_label: str) -> None:
        LOG.info("Dumping DB %s to file...", project_label)
        cmd = [self._executable, f"--dbname={connection_string}", "--format=tar"]

        try:
            returncode, stderr = self._stream_to_archive(cmd, local_path)
        except OSError as exc:
            _discard(local_path)
            raise DumpFailure(f"Could not run {self._executable}: {exc}", project=project_label) from exc

        if returncode != 0 or ERROR_PATTERN.search(stderr):
            _discard(local_path)
            raise DumpFailure(
                stderr or f"{self._executable} exited with status {returncode}",
                project=project_label,
            )

        if stderr:
            LOG.info("pg_dump %s succeeded with stderr warnings:\n%s", project_label, stderr)

        LOG.info("Backup size %s: %s", project_label, format_size(local_path.stat().st_size))
        LOG.info("DB %s dumped to file...", project_label)

    @staticmethod
    def _stream_to_archive(cmd: List[str], local_path: Path) -> Tuple[int, str]:
        # stderr goes to a spooled file so a chatty dump cannot block on a full pipe.
        with tempfile.TemporaryFile() as stderr_buffer:
            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr_buffer)
            try:
                with gzip.open(local_path, "wb") as archive:
                    shutil.copyfileobj(process.stdout, archive, CHUNK_SIZE)
            finally:
                process.stdout.close()
                returncode = process.wait()

            stderr_buffer.seek(0)
            stderr = stderr_buffer.read().decode("utf-8", "replace").rstrip()
        return returncode, stderr


def _discard(local_path: Path) -> None:
    try:
        local_path.unlink(missing_ok=True)
    except OSError as exc:
        LOG.warning("Could not remove partial archive %s: %s", local_path, exc)
