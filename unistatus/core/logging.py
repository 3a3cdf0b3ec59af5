from __future__ import annotations

import logging
import sys

from unistatus.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Install a single stream handler once; repeated calls only adjust the level.
    global _configured
    settings = get_settings()
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # Keep HTTP client chatter out of check worker logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
