"""Logging setup for the CLI and embedding services."""

import logging
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s | %(name)-25s | %(levelname)-8s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

HANDLER_NAMES = ("taskslot-console", "taskslot-file")


def setup_logging(level: str = "INFO", log_dir: Optional[Union[str, Path]] = None):
    """Configure root logging for taskslot. Calling it again replaces the handlers."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.set_name("taskslot-console")
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)

    # File handler (optional)
    file_handler = None
    if log_dir is not None and Path(log_dir).exists():
        file_handler = logging.FileHandler(Path(log_dir) / "taskslot.log")
        file_handler.set_name("taskslot-file")
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)

    root_logger = logging.getLogger()
    for handler in [h for h in root_logger.handlers if h.get_name() in HANDLER_NAMES]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.setLevel(log_level)
    root_logger.addHandler(console_handler)
    if file_handler:
        root_logger.addHandler(file_handler)

    # Reduce noise from the Google client stack
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("google.auth").setLevel(logging.WARNING)

    return root_logger
