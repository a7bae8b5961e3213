"""
mmai/log_setup.py

Logging configuration for the CLI and embedding hosts, plus a scoped timer
for per-decision timing.
"""

import logging
import logging.handlers
import os
import time
from datetime import datetime
from typing import Optional

from .config import LoggingConfig
from .exceptions import ConfigError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s"
CONSOLE_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

_HANDLER_MARKER = "_mmai_handler"


def _level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    if not isinstance(level, int):
        raise ConfigError(f"Unknown log level: {name}")
    return level


def setup_logging(config: LoggingConfig, run_name: Optional[str] = None) -> Optional[str]:
    """
    Installs a console handler and a rotating file handler on the root logger.

    Calling it again replaces the handlers installed by a previous call.

    Returns:
        Path of the log file, or None if the file handler could not be created.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    console_level = _level(config.log_level_console)
    file_level = _level(config.log_level_file)
    root.setLevel(min(console_level, file_level))

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    setattr(console, _HANDLER_MARKER, True)
    root.addHandler(console)

    run_name = run_name or datetime.now().strftime("%Y-%m-%d_%H%M%S")
    log_path = os.path.join(config.log_dir, f"{config.log_file_prefix}_{run_name}.log")
    try:
        os.makedirs(config.log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        logger.error("Could not create log file '%s': %s", log_path, e)
        return None

    file_handler.setLevel(file_level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    setattr(file_handler, _HANDLER_MARKER, True)
    root.addHandler(file_handler)

    logger.info("Logging initialized (file: %s).", log_path)
    return log_path


class ScopedTimer:
    """
    Logs the wall time of a block on exit.

    The label may be replaced inside the block, e.g. once the result that
    should appear in the log line is known.
    """

    def __init__(self, name: str, log: Optional[logging.Logger] = None, level: int = logging.DEBUG):
        self.name = name
        self.log = log or logger
        self.level = level
        self.elapsed_ms = 0.0
        self._start = 0.0

    def __enter__(self) -> "ScopedTimer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
        self.log.log(self.level, "%s: %.2fms", self.name, self.elapsed_ms)
