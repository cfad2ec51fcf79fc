import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


LOG_DIR_ENV = "SHOP_LEDGER_LOG_DIR"
LOG_LEVEL_ENV = "SHOP_LEDGER_LOG_LEVEL"
LOG_FILE_NAME = "shop_ledger.log"


def resolve_log_dir() -> Path:
    """Directory for the rotating log file.

    ``$SHOP_LEDGER_LOG_DIR`` wins; otherwise ``.logs`` under the working
    directory, which is where ``config.ini`` is normally searched from.
    """

    override = os.environ.get(LOG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.cwd() / ".logs"


def _configure_logging(name: str = __name__, log_dir: Optional[Path] = None) -> logging.Logger:
    """Attach a rotating file handler and a stderr handler to ``name`` once."""

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = logging.getLevelName(os.environ.get(LOG_LEVEL_ENV, "INFO").strip().upper())
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_file = (log_dir or resolve_log_dir()) / LOG_FILE_NAME
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to initialize log file at '{log_file}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logger.debug("Logger '%s' writing to '%s'", name, log_file)
    return logger


log = _configure_logging()
