"""Logging for the field agent: one rotating file plus the console.

Every component logs through a child of the ``fieldagent`` logger
(``fieldagent.controller``, ``fieldagent.feedback.auditlog``, ...), so the
handlers configured here see all agent output.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Union

ROOT_LOGGER = "fieldagent"

_FORMATTER = logging.Formatter(
    fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S%z",
)


def setup_logger(
    name: str = ROOT_LOGGER,
    log_file: str = "./logs/fieldagent.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: int = logging.INFO,
) -> logging.Logger:
    """Attach a rotating file handler and a console handler to logger ``name``.

    Calling it again only changes the level; handlers are added once.

    Args:
        name: Logger name
        log_file: Path to log file (parent directories are created)
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Logging level

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        set_log_level(level, name)
        return logger

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handlers = [
        RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        ),
        logging.StreamHandler(),
    ]
    for handler in handlers:
        handler.setFormatter(_FORMATTER)
        logger.addHandler(handler)

    set_log_level(level, name)
    return logger


def set_log_level(level: Union[int, str], name: str = ROOT_LOGGER) -> None:
    """Change the level of logger ``name`` and of its handlers."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger = logging.getLogger(name)
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)


class LogLevelFollower:
    """Applies ``log_level`` configuration changes to the running logger."""

    def __init__(self, config_handler, name: str = ROOT_LOGGER):
        self.config_handler = config_handler
        self.name = name

    def __call__(self, event: Dict[str, Any]) -> None:
        if "log_level" in event.get("changed", []):
            level = self.config_handler.get().log_level
            set_log_level(level, self.name)
            logging.getLogger(self.name).info(f"Log level changed to {level}")
