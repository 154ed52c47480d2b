"""Logging setup for the service. Call configure_logging() once at startup."""
import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Every module logs under this namespace via logging.getLogger(__name__)
APP_LOGGER = "app"


def configure_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Install a single stream handler on the application logger.

    Calling it again only updates the level, so repeated app imports in tests
    do not stack handlers. Records still propagate to the root logger.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logger = logging.getLogger(APP_LOGGER)
    logger.setLevel(level)

    handler = next((h for h in logger.handlers if getattr(h, "_verification_handler", False)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._verification_handler = True
        logger.addHandler(handler)
    handler.setLevel(level)
    return logger
