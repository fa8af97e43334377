# sevaguard/core/logging_config.py
"""Diagnostic logging for the process (the audit log lives in SecureLogger)"""

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Audit levels that the standard library does not define
NOTICE = 25
ALERT = 55
EMERGENCY = 60


def register_levels() -> None:
    """Make NOTICE/ALERT/EMERGENCY show up by name in formatted records"""
    logging.addLevelName(NOTICE, "NOTICE")
    logging.addLevelName(ALERT, "ALERT")
    logging.addLevelName(EMERGENCY, "EMERGENCY")


def setup_logging():
    """Configure the root logger once per process"""
    register_levels()

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "logs"))

    # Ensure the log directory exists (not world readable)
    log_dir.mkdir(mode=0o750, parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Console handler (attach once)
    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    # File handler (rotating, max 5 MB per file, 5 backups)
    log_file = log_dir / 'sevaguard.log'
    if not any(isinstance(h, RotatingFileHandler) and h.baseFilename == str(log_file.resolve()) for h in root_logger.handlers):
        file_handler = RotatingFileHandler(
            filename=str(log_file),
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Quiet chatty libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return root_logger
