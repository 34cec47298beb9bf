from __future__ import annotations

import logging

from willguard.core.config import get_settings


_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Configure the root logger once per process; handlers are left to the runtime.
    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=_FORMAT)
    logging.getLogger("willguard").setLevel(level)
    # Keep per-request httpx logging out of the engine logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
