"""
Unit tests -- package logger setup.
"""
import logging

from flipquery.core.logging import ROOT_LOGGER, configure_logging, get_logger


def test_module_loggers_share_one_handler():
    get_logger("flipquery.hybrid.cache")
    get_logger("flipquery.hybrid.processor")
    assert len(logging.getLogger(ROOT_LOGGER).handlers) == 1


def test_foreign_names_are_nested_under_package():
    assert get_logger("scripts.seed").name == "flipquery.scripts.seed"
    assert get_logger("flipquery.db.executor").name == "flipquery.db.executor"


def test_level_override():
    root = configure_logging("debug")
    assert root.level == logging.DEBUG
    configure_logging("INFO")
    assert root.level == logging.INFO
