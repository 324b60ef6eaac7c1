#!/usr/bin/env python3
#
# This module contains utility functions for logging.

import logging
import os
import sys

LOG_LEVEL_VARIABLE = "KADM_LOG_LEVEL"


def _log_level() -> int:
    level = logging.getLevelName(os.getenv(LOG_LEVEL_VARIABLE, "INFO").upper())
    if not isinstance(level, int):
        return logging.INFO
    return level


def get_logger(name: str) -> logging.Logger:
    """
    Get a module-scoped logger which logs to stdout. This function must always
    be invoked as follows:

    get_logger(__name__)

    The level defaults to INFO and may be overridden with the KADM_LOG_LEVEL
    environment variable. Calling this more than once for the same name
    returns the same logger without stacking handlers.
    """
    logger = logging.getLogger(name)
    logger.setLevel(_log_level())
    if logger.handlers:
        return logger
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d %(levelname)s %(filename)s:%(lineno)d %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    return logger
