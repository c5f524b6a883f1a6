"""Small logging helpers shared by the loader, the estimator and the CLI.

Kept apart from ``config`` so modules can log without importing YAML handling.
"""

from __future__ import annotations

import logging

PACKAGE_LOGGER = "pgls"

_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level="INFO", handler: logging.Handler | None = None) -> logging.Logger:
    """
    Attaches a handler to the package logger and sets its level.

    Calling it again only updates the level, so repeated CLI or framework
    construction does not stack handlers.

    Args:
        level: Level name ('DEBUG', 'INFO', ...) or number.
        handler: Handler to attach. Defaults to a stderr StreamHandler.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    if isinstance(level, str):
        level_value = logging.getLevelName(level.upper())
        if not isinstance(level_value, int):
            raise ValueError(f"Unknown log level: {level!r}")
        level = level_value
    logger.setLevel(level)
    if not any(getattr(h, "_pgls_handler", False) for h in logger.handlers):
        handler = handler or logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        handler._pgls_handler = True
        logger.addHandler(handler)
    return logger


def log_dropped_identifiers(
    dropped_tips, dropped_rows, logger: logging.Logger | None = None
) -> None:
    """Log the identifiers removed while aligning a tree with a trait table."""
    logger = logger or logging.getLogger(f"{PACKAGE_LOGGER}.core.data_loader")
    if dropped_tips:
        logger.warning(
            "Dropping %d tip(s) absent from the trait table: %s",
            len(dropped_tips), ", ".join(map(str, dropped_tips)),
        )
    if dropped_rows:
        logger.warning(
            "Dropping %d table row(s) absent from the tree: %s",
            len(dropped_rows), ", ".join(map(str, dropped_rows)),
        )
