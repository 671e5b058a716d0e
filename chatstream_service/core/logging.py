import logging
from typing import Optional

LOGGER_NAME = "chatstream_service"

logger = logging.getLogger(LOGGER_NAME)


def configure_logging(level: str | int = "INFO", handler: Optional[logging.Handler] = None) -> logging.Logger:
    """Attach a single handler to the package logger and set its level."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if handler is None:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger
