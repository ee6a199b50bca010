"""
Logging configuration for the runner service.
"""
import logging
import sys
from pathlib import Path

from .config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_dir: Path | None = None, level: str = "INFO") -> logging.Logger:
    """Configure the package logger: console always, file under log_dir if given."""
    log_level = getattr(logging, level, logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    package_logger = logging.getLogger("shellrunner")
    package_logger.setLevel(log_level)
    # idempotent when the module is reloaded by the dev server
    package_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_dir:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "shellrunner.log", encoding="utf-8")
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    return package_logger

logger = setup_logging(settings.LOG_DIR, settings.LOG_LEVEL)
