"""
Process-wide logging setup.

- One format for the worker process and the helper scripts.
- Level comes from settings.LOG_LEVEL unless given explicitly.
- Replace with structured logs (structlog / python-json-logger) if a log sink needs them.
"""
import logging
from typing import Optional

from config.settings import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=(level or settings.LOG_LEVEL).upper(), format=LOG_FORMAT)
    # SQL echo is controlled by settings.DEBUG, keep the engine logger quiet otherwise
    if not settings.DEBUG:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
