"""Logging utilities for the inbound relay.

This module provides a centralized logging helper. The actual logging setup
(level, handlers, format) is configured via ``logging.basicConfig()`` in the
entry point (``main.py`` or the CLI) to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from inbound_relay.logger import get_logger

        logger = get_logger("Dispatch")
        logger.info("Webhook delivered")
"""

import logging


def get_logger(name: str = "InboundRelay") -> logging.Logger:
    """Retrieve a logger instance for the given component.

    The returned logger carries no handlers of its own; records propagate to
    the root logger configured by the application entry point.

    Args:
        name: The logger name. Defaults to "InboundRelay".

    Returns:
        A ``logging.Logger`` instance bound to the given name.

    Example:
        >>> logger = get_logger("Scheduler")
        >>> logger.info("Processed 3 due sends")
    """
    return logging.getLogger(name)
