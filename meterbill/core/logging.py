from __future__ import annotations

import logging

from meterbill.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process; later calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    if not _configured:
        logging.basicConfig(level=resolved, format=_LOG_FORMAT)
        # Keep driver chatter out of service logs unless explicitly requested.
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
        logging.getLogger("stripe").setLevel(logging.WARNING)
        _configured = True
    logging.getLogger().setLevel(resolved)
