from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Route log records to stderr; safe to call again to change the level."""
    root = logging.getLogger()
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    if not any(getattr(handler, "_db_backup", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._db_backup = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    root.setLevel(numeric_level)
    # botocore logs request wire traces at DEBUG.
    logging.getLogger("botocore").setLevel(max(numeric_level, logging.INFO))
