"""Logging configuration for the hci-bootstrap package."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

NOISY_LOGGERS = ('paramiko', 'urllib3', 'kubernetes')


def setup_logging(
    debug_mode: bool = False,
    level: str = "INFO",
    log_file: Optional[Path] = None,
    max_size_mb: int = 10,
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure root logging for a run.

    Args:
        debug_mode: Force DEBUG level and keep third-party loggers verbose
        level: Level name used when not in debug mode
        log_file: Optional file that also receives every record (read by the portal)
        max_size_mb: Rotation size for the log file
        backup_count: Number of rotated files to keep

    Returns:
        The package logger
    """
    log_level = logging.DEBUG if debug_mode else getattr(logging, level.upper(), logging.INFO)
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file is not None:
        try:
            log_file = Path(log_file)
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(RotatingFileHandler(
                filename=log_file,
                maxBytes=max_size_mb * 1024 * 1024,
                backupCount=backup_count,
            ))
        except OSError as e:
            print(f"Could not open log file {log_file}: {e}", file=sys.stderr)

    logging.basicConfig(level=log_level, format=LOG_FORMAT, handlers=handlers, force=True)

    # Disable debug logging for noisy libraries
    if not debug_mode:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger("hcibootstrap")
    logger.setLevel(log_level)
    return logger
