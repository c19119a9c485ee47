"""BarStock: bar point-of-sale and stock reconciliation.

Importing the package sets up the shared ``barstock`` logger used by every
layer. Records go to stderr and to ``barstock.log`` in the log directory,
which is ``$BARSTOCK_LOG_DIR`` when set and ``<project>/.logs`` otherwise.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "BARSTOCK_LOG_DIR"
LOG_FILE_NAME = "barstock.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def log_directory() -> Path:
    """Directory holding the rotating log file."""

    override = os.environ.get(LOG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return PROJECT_ROOT / ".logs"


def _file_handler(directory: Path, formatter: logging.Formatter) -> Optional[logging.Handler]:
    log_file = directory / LOG_FILE_NAME
    try:
        directory.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: BarStock will log to stderr only, '{log_file}' is unusable: {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def build_logger(name: str = __name__, directory: Optional[Path] = None) -> logging.Logger:
    """Return logger ``name`` with the file and stderr handlers attached once."""

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    file_handler = _file_handler(directory if directory is not None else log_directory(), formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger


log = build_logger()
log.debug("Logging ready for '%s'", __name__)
