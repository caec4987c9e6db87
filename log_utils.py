# -*- coding: utf-8 -*-
"""
Logging setup: console plus a daily rotated log file.
"""

import logging
import logging.handlers
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config, level=logging.INFO):
    """
    Configure the root logger once per process.

    Args:
        config: Configuration with log_file and log_retention_days
        level: Root log level

    Returns:
        The root logger
    """
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if config.log_file:
        os.makedirs(os.path.dirname(config.log_file) or ".", exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            config.log_file,
            when="midnight",
            backupCount=config.log_retention_days,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    return root
