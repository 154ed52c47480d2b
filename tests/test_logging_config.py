"""Tests for logging setup."""
import logging

from app.logging_config import APP_LOGGER, configure_logging


def _own_handlers(logger):
    return [h for h in logger.handlers if getattr(h, "_verification_handler", False)]


def test_single_handler_at_configured_level():
    logger = configure_logging("DEBUG")
    configure_logging("warning")

    assert logger is logging.getLogger(APP_LOGGER)
    assert logger.level == logging.WARNING
    handlers = _own_handlers(logger)
    assert len(handlers) == 1
    assert handlers[0].level == logging.WARNING


def test_unknown_level_falls_back_to_info():
    logger = configure_logging("chatty")

    assert logger.level == logging.INFO


def test_module_loggers_inherit_level():
    configure_logging("ERROR")

    assert logging.getLogger("app.services.verification_engine").getEffectiveLevel() == logging.ERROR
    configure_logging("INFO")
