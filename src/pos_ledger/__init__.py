"""POS ledger backend.

Importing the package configures the ``pos_ledger`` logger: a rotating file
under ``.logs/`` and a stderr stream share one format. The level starts at
``INFO`` and follows ``[Logging] Level`` once a ``config.ini`` is loaded.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "pos_ledger.log"
LOG_FORMAT = "%(asctime)s | %(process)d | %(name)s | %(levelname)s | %(message)s"
DEFAULT_LOG_LEVEL = "INFO"


def _configure_logging(level: str = DEFAULT_LOG_LEVEL) -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(f"Warning: ledger log file '{LOG_FILE}' is unavailable: {exc}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.setLevel(level)
    return logger


def set_log_level(level: str) -> None:
    """Apply a level name such as ``DEBUG`` or ``warning`` to the package logger.

    Raises:
        ValueError: If ``level`` is not a standard logging level name.
    """
    name = str(level).strip().upper()
    if name not in logging.getLevelNamesMapping():
        raise ValueError(f"Unknown log level: {level!r}")
    if log.level != logging.getLevelName(name):
        log.setLevel(name)
        log.debug("Log level set to %s", name)


log = _configure_logging()
