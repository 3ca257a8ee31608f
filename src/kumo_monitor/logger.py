# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the KumoMTA monitor.

Handlers, level and format are configured once by the entry point through
``logging.basicConfig()``; library modules only ask for named loggers.

Example:
    Typical usage in a module::

        from kumo_monitor.logger import get_logger

        logger = get_logger("KumoMonitor.watcher")
        logger.info("tailer started")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "KumoMonitor") -> logging.Logger:
    """Return the standard library logger bound to ``name``."""
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for a process entry point.

    Args:
        level: Level name such as ``"DEBUG"``; unknown names fall back to INFO.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        force=True,
    )
