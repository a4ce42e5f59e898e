"""Logging configuration for the kubeinstall package."""
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

NOISY_LOGGERS = ('paramiko', 'urllib3', 'uvicorn.access')


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 100,
    backup_count: int = 5,
    debug: bool = False,
) -> None:
    """Configure the root logger for the CLI and the API server.

    Args:
        level: Log level name
        log_file: Optional path of a rotating log file
        max_size_mb: Size at which the log file rotates
        backup_count: Number of rotated files to keep
        debug: Force DEBUG and let library loggers through
    """
    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(RotatingFileHandler(
            log_file,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
        ))
    logging.basicConfig(level=log_level, format=LOG_FORMAT, datefmt=DATE_FORMAT,
                        handlers=handlers, force=True)

    # Disable debug logging for noisy libraries
    if not debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
