import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("MARGIN_REPORT_LOG_DIR", PROJECT_ROOT / ".logs")).expanduser()
LOG_FILE = LOG_DIR / "margin_report.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _level_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip().upper()
    level = logging.getLevelName(raw) if raw else default
    return level if isinstance(level, int) else default


def _configure_logging() -> logging.Logger:
    """Attach the report's file and console handlers to the package logger.

    The file keeps everything from ``MARGIN_REPORT_LOG_LEVEL`` (INFO by
    default) up. The console only shows warnings and errors unless
    ``MARGIN_REPORT_CONSOLE_LEVEL`` says otherwise, so the rendered tables on
    stdout are not interleaved with load chatter.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    file_level = _level_from_env("MARGIN_REPORT_LOG_LEVEL", logging.INFO)
    console_level = _level_from_env("MARGIN_REPORT_CONSOLE_LEVEL", logging.WARNING)
    logger.setLevel(min(file_level, console_level))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: margin report log disabled, cannot write '{LOG_FILE}': {exc}", file=sys.stderr)
    else:
        file_handler.setLevel(file_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'margin_report' package.")
