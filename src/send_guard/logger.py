"""Logging utilities for send-guard.

This module provides a centralized logging helper. Handlers, level and
format are configured once with ``logging.basicConfig()`` in the entry
point (see :mod:`send_guard.server`) to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from send_guard.logger import get_logger

        logger = get_logger("DispatchQueue")
        logger.info("Message queued")
"""

import logging

ROOT_LOGGER_NAME = "SendGuard"


def get_logger(name: str | None = None) -> logging.Logger:
    """Retrieve a logger in the ``SendGuard`` hierarchy.

    Args:
        name: Optional child name, e.g. ``"HealthMonitor"`` gives
            ``SendGuard.HealthMonitor``. Defaults to the root service logger.

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    if not name:
        return logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
