import sys
import logging
from pathlib import Path
from typing import Optional

from cloudlibs.local.config import effective_settings as config
from cloudlibs.log.handler import LokiHandler

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - [%(name)s] - %(message)s'

# Level names accepted on the command line of every cloudlibs script.
LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "verbose": logging.DEBUG,
    "debug": logging.DEBUG,
    "silly": logging.DEBUG,
}


class MainFormatter(logging.Formatter):
    """Formatter shared by the console and file handlers."""

    def __init__(self) -> None:
        super().__init__(LOG_FORMAT)


def parse_log_level(name: Optional[str], default: int = logging.INFO) -> int:
    """
    Maps a command-line log level name to a logging level.

    :param name: Level name such as 'info' or 'verbose'. Case insensitive.
    :param default: Level returned for a missing or unknown name.
    :return: The numeric logging level.
    """
    if not name:
        return default
    return LOG_LEVELS.get(name.strip().lower(), default)


def setup_logging(console_level: int = logging.INFO, log_file: Optional[Path] = None) -> None:
    """
    Configures the root logger for the current process.
    This sets up handlers for console, a log file, and optionally Loki,
    clearing any previously configured handlers to prevent duplication.

    :param console_level: The logging level for the console output (e.g., logging.INFO).
    :param log_file: Path of the log file. Defaults to LOG_FILE_PATH.
    """
    root_logger = logging.getLogger()
    # Set root level to lowest to capture all messages for handler filtering
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(MainFormatter())
    root_logger.addHandler(console_handler)

    # --- File Handler (always enabled for all levels) ---
    log_path = Path(log_file) if log_file else config.LOG_FILE_PATH
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(MainFormatter())
        root_logger.addHandler(file_handler)
    except OSError as e:
        root_logger.error(f"Failed to open log file '{log_path}': {e}. Logging to file will be disabled.")

    # --- Loki Handler (conditional) ---
    if config.LOKI_ENABLED:
        try:
            loki_handler = LokiHandler(url=config.LOKI_URL, org_id=config.LOKI_ORG_ID)
            loki_handler.setLevel(logging.INFO)
            loki_handler.setFormatter(MainFormatter())
            root_logger.addHandler(loki_handler)
            root_logger.info(f"Grafana Loki logging handler initialized for {config.LOKI_URL}.")
        except Exception as e:
            root_logger.error(f"Failed to initialize Grafana Loki logging handler: {e}")
