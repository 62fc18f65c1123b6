from __future__ import annotations

import logging
import sys


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party clients log full request URLs, which can carry provider keys in query strings.
_QUIET_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str = "INFO") -> None:
    # Configure the root logger once; repeated calls only adjust the level.
    root = logging.getLogger()
    resolved = getattr(logging, level.upper(), logging.INFO)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(resolved)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(resolved, logging.WARNING))
