import logging

from app.core.config import settings
from pkg.log.logger import get_logger as _get_logger


def get_logger(name: str) -> logging.Logger:
    """Logger factory bound to the configured LOG_LEVEL."""
    return _get_logger(name, settings.LOG_LEVEL.upper())


# Example: logger = get_logger(__name__)
