"""
WimForge Logging System
Console output, rotating application logs and one log file per ISO build
"""

import logging
import logging.handlers
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Chatty third-party loggers kept at WARNING
QUIET_LOGGERS = ("urllib3", "requests")


def _rotating_handler(path: Path, max_bytes: int, backups: int, level: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backups, encoding='utf-8')
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


def setup_logging(log_dir: Optional[Path] = None, level: str = "INFO") -> Path:
    """Configure the root logger and return the log directory

    Console and wimforge.log follow `level`; errors.log always receives
    ERROR and above.
    """
    log_dir = Path(log_dir) if log_dir else Path.home() / ".wimforge" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    root_logger.addHandler(_rotating_handler(log_dir / "wimforge.log", 10 * 1024 * 1024, 5, numeric_level))
    root_logger.addHandler(_rotating_handler(log_dir / "errors.log", 5 * 1024 * 1024, 3, logging.ERROR))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(f"WimForge logging initialized in {log_dir}")
    return log_dir


def build_log_path(log_dir: Path, label: str, started: Optional[datetime] = None) -> Path:
    """build_<label>_<YYYYmmdd_HHMMSS>.log inside log_dir"""
    started = started or datetime.now()
    safe_label = "".join(c if c.isalnum() or c in "-_" else "_" for c in label) or "iso"
    return Path(log_dir) / f"build_{safe_label}_{started:%Y%m%d_%H%M%S}.log"


@contextmanager
def build_log(log_dir: Path, label: str) -> Iterator[Path]:
    """Capture every record emitted during one build in its own DEBUG log"""
    path = build_log_path(log_dir, label)
    path.parent.mkdir(parents=True, exist_ok=True)

    handler = logging.FileHandler(path, encoding='utf-8')
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    root_logger = logging.getLogger()
    previous_level = root_logger.level
    root_logger.addHandler(handler)
    # Handlers from setup_logging carry explicit levels, so only this file sees DEBUG
    root_logger.setLevel(logging.DEBUG)
    try:
        yield path
    finally:
        root_logger.removeHandler(handler)
        root_logger.setLevel(previous_level)
        handler.close()
