"""
Logging utilities for the agent daemon
"""

import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional, TextIO


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    console_output: bool = True,
    stream: Optional[TextIO] = None
) -> logging.Logger:
    """Setup logging for the `agentd` logger hierarchy.

    `stream` defaults to stdout. The stdio server passes stderr so that log
    lines never mix with protocol messages.
    """

    logger = logging.getLogger("agentd")
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Clear existing handlers
    logger.handlers.clear()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if console_output:
        console_handler = logging.StreamHandler(stream or sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    return logger


def get_default_log_file() -> str:
    """Get default log file path"""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"logs/agentd_{timestamp}.log"
