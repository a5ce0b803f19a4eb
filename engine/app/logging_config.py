import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import settings

LOGGER_NAME = "backupd"

logger = logging.getLogger(LOGGER_NAME)


def setup_logging(log_file: str | None = None, level: str | None = None):
    logger.setLevel(getattr(logging, (level or settings.backupd_log_level).upper(), logging.INFO))
    if logger.handlers:
        return logger
    path = Path(log_file or settings.backupd_log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=3)
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def read_log_lines(max_lines=200, log_file: str | None = None):
    path = Path(log_file or settings.backupd_log_file)
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8") as fh:
        lines = fh.readlines()
    return lines[-max_lines:]
