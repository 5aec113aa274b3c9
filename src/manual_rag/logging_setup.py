"""
Centralized logging setup.
Writes to both the console and a rotating log file.

Usage:
    from manual_rag.logging_setup import setup_logging
    setup_logging("./logs", "DEBUG")
    logger = logging.getLogger(__name__)
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_FILE = "manual_rag.log"

_initialized = False


def setup_logging(log_dir: str = "./logs", level: int | str = logging.INFO):
    """Configure the root logger with console + file handlers. Runs once."""
    global _initialized
    if _initialized:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)

    fmt = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(fmt)
    root.addHandler(console)

    # 5MB max, keep 3 backups
    file_handler = RotatingFileHandler(
        log_path / LOG_FILE,
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    # third-party clients are chatty at INFO
    for noisy in ("httpx", "httpcore", "sentence_transformers"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    _initialized = True
    logging.getLogger(__name__).info("Logging initialized → %s", log_path / LOG_FILE)
