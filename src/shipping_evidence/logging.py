import logging
import os
from typing import List, Optional, Union


LOGGER_PREFIX = "shipping_evidence"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVEL_ALIASES = {"WARN": logging.WARNING}


def _coerce_level(value: Union[str, int, None]) -> int:
    if isinstance(value, int):
        return value
    name = (value or "").strip().upper()
    level = _LEVEL_ALIASES.get(name, logging.getLevelName(name))
    return level if isinstance(level, int) else logging.INFO


def _handlers(level: int, log_file: Optional[str]) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            logging.getLogger(LOGGER_PREFIX).warning(f"LOG_FILE {log_file!r} unusable ({e}); logging to stream only")
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(formatter)
    return handlers


def get_logger(name: str) -> logging.Logger:
    """Logger for one component, e.g. ``get_logger("record-store")``.

    Level comes from LOG_LEVEL (INFO when unset or unknown); LOG_FILE adds a
    file handler next to the stream one.
    """
    logger = logging.getLogger(f"{LOGGER_PREFIX}.{name}")
    if getattr(logger, "_shipping_configured", False):
        return logger

    level = _coerce_level(os.environ.get("LOG_LEVEL"))
    logger.setLevel(level)
    for h in _handlers(level, os.environ.get("LOG_FILE")):
        logger.addHandler(h)

    # uvicorn and pytest install root handlers of their own
    logger.propagate = False
    setattr(logger, "_shipping_configured", True)
    return logger
