from __future__ import annotations

import logging
from pathlib import Path

from db_backup.job_engine import DeleteFailure

LOG = logging.getLogger(__name__)

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_size(size_bytes: int) -> str:
    """Format a byte count with 1024-based units, e.g. ``1.50 MB``."""
    size = float(size_bytes)
    for unit in _SIZE_UNITS[:-1]:
        if size < 1024:
            break
        size /= 1024
    else:
        unit = _SIZE_UNITS[-1]
    if unit == "B":
        return f"{int(size)} B"
    return f"{size:.2f} {unit}"


class LocalFileRemover:
    """Deletes staged archives once they have been uploaded."""

    def remove(self, local_path: Path) -> None:
        LOG.info("Deleting file %s...", local_path)
        try:
            local_path.unlink()
        except OSError as exc:
            raise DeleteFailure(f"Could not delete {local_path}: {exc.strerror or exc}") from exc
