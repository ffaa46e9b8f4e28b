import logging
import sys
from typing import Dict, Optional

_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_loggers: Dict[str, logging.Logger] = {}
_default_level = logging.INFO


class KeyValueFormatter(logging.Formatter):
    """Single-line formatter that appends ``extra`` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = {k: v for k, v in vars(record).items() if k not in _RESERVED and not k.startswith("_")}
        if fields:
            line += " " + " ".join(f"{key}={fields[key]}" for key in sorted(fields))
        return line


def configure_logging(name: str, level: Optional[str] = None) -> logging.Logger:
    """Simple JSON-ish logger to keep output structured for workers."""
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper())
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    formatter = KeyValueFormatter(
        fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    handler.setFormatter(formatter)

    if level is None:
        logger.setLevel(_default_level)
    logger.addHandler(handler)
    logger.propagate = False
    _loggers[name] = logger
    return logger


def set_level(level: str) -> None:
    """Apply ``level`` to every pipeline logger, including ones created later."""
    global _default_level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unknown log level: {level}")
    _default_level = resolved
    for logger in _loggers.values():
        logger.setLevel(_default_level)
