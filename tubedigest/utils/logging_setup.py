#!/usr/bin/env python3
"""
Logging configuration shared by the web app and the CLI
"""

import os
import sys
import logging
from logging.handlers import RotatingFileHandler

from tubedigest.core.constants import (
    LOGS_DIR, LOG_FILE, DEFAULT_LOG_LEVEL,
    LOG_FILE_MAX_BYTES, LOG_FILE_BACKUP_COUNT,
)

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_configured = False


def setup_logging(log_dir: str = LOGS_DIR, log_level: str = None) -> logging.Logger:
    """Setup logging with rotation and formatting.

    - Console: LOG_LEVEL and above
    - File: everything (DEBUG) to help diagnose transcript and delivery issues
    """
    global _configured

    level_name = (log_level or os.getenv('LOG_LEVEL', DEFAULT_LOG_LEVEL)).upper()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger('tubedigest')
    if _configured:
        return logger

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(console_handler)

    os.makedirs(log_dir, exist_ok=True)
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE),
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding='utf-8'
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(file_handler)

    # Vendor SDKs are chatty at DEBUG
    for noisy in ('googleapiclient.discovery_cache', 'urllib3', 'httpx', 'apscheduler.executors'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _configured = True
    logger.info(f"Logging initialized (level={level_name})")
    return logger
