"""Till Ledger: point-of-sale checkout, pricing and sales analytics on a workbook.

Importing the package configures the ``till_ledger`` logger once. Records go
to stderr and to a rotating file under ``.logs/`` at the project root. Two
environment variables adjust this for a deployment:

``TILL_LEDGER_LOG_DIR``
    Directory for ``till_ledger.log`` instead of ``.logs/``.
``TILL_LEDGER_LOG_LEVEL``
    Level name such as ``DEBUG`` or ``WARNING``; defaults to ``INFO``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "TILL_LEDGER_LOG_DIR"
LOG_LEVEL_ENV = "TILL_LEDGER_LOG_LEVEL"
LOG_FILE_NAME = "till_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def resolve_log_dir(log_dir: Optional[Union[str, Path]] = None) -> Path:
    """Return the explicit directory, the environment override or ``.logs/``."""
    if log_dir is not None:
        return Path(log_dir)
    configured = os.environ.get(LOG_DIR_ENV, "").strip()
    return Path(configured).expanduser() if configured else PROJECT_ROOT / ".logs"


def resolve_log_level(level: Optional[Union[str, int]] = None) -> int:
    """Map a level name or number to a :mod:`logging` level.

    Unknown names fall back to ``INFO`` with a note on stderr.
    """
    raw = level if level is not None else os.environ.get(LOG_LEVEL_ENV, "").strip()
    if isinstance(raw, int):
        return raw
    if not raw:
        return logging.INFO
    resolved = logging.getLevelName(raw.upper())
    if isinstance(resolved, int):
        return resolved
    print(f"Warning: unknown log level '{raw}', using INFO", file=sys.stderr)
    return logging.INFO


def configure_logging(
    name: str = __name__,
    *,
    log_dir: Optional[Union[str, Path]] = None,
    level: Optional[Union[str, int]] = None,
) -> logging.Logger:
    """Attach the rotating file and console handlers to ``name``.

    A logger that already has handlers is returned untouched, so repeated
    imports do not duplicate output.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    resolved_level = resolve_log_level(level)
    logger.setLevel(resolved_level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    directory = resolve_log_dir(log_dir)
    log_file = directory / LOG_FILE_NAME
    try:
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(resolved_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to initialize log file at '{log_file}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(resolved_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = configure_logging()
log.debug("Till Ledger %s logging to %s", __version__, resolve_log_dir())
