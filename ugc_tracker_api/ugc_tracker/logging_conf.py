import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

# Loggers that are noisy at INFO when the API serves the dashboard.
QUIET_LOGGERS = ("aiohttp.access", "httpx", "multipart.multipart")


def setup_logging(level: Optional[str] = None) -> None:
    lvl = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=lvl, format=LOG_FORMAT)
    if lvl != "DEBUG":
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
