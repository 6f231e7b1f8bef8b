"""Logging setup for the registry service."""

import logging

LOGGER_NAME = "supplement_registry"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s | %(message)s"
_HANDLER_NAME = "supplement_registry.stream"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach one stream handler to the package logger and set its level.

    ``level`` is a level name such as ``"debug"`` or a numeric level.
    Repeated calls only update the level.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(resolve_level(level))
    if not any(handler.get_name() == _HANDLER_NAME for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def resolve_level(level: str | int) -> int:
    """Return the numeric level for a level name or number."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved
