from __future__ import annotations

import logging

from billrail.core.config import get_settings


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Idempotent: repeated app construction in tests must not stack handlers.
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=_FORMAT)
    root.setLevel(resolved)
    # SQL echo stays off unless explicitly requested through the engine.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
