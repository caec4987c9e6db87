# -*- coding: utf-8 -*-
"""
Tests for log_utils.py - handler setup.
"""

import logging
import logging.handlers

import pytest

from log_utils import setup_logging


@pytest.fixture
def clean_root_logger():
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in saved[0]:
            handler.close()
    root.handlers[:] = saved[0]
    root.setLevel(saved[1])


def test_console_only_without_log_file(clean_root_logger, test_config):
    before = len(clean_root_logger.handlers)

    setup_logging(test_config)

    assert len(clean_root_logger.handlers) == before + 1


def test_rotating_file_handler_keeps_retention_days(clean_root_logger, test_config, tmp_path):
    test_config.log_file = str(tmp_path / "logs" / "taskmail.log")

    setup_logging(test_config, level=logging.DEBUG)

    rotating = [
        h
        for h in clean_root_logger.handlers
        if isinstance(h, logging.handlers.TimedRotatingFileHandler)
    ]
    assert len(rotating) == 1
    assert rotating[0].backupCount == 7
    assert (tmp_path / "logs").is_dir()
    assert clean_root_logger.level == logging.DEBUG
