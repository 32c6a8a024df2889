"""
Utilities module for the escrow settlement engine.

Provides helper functions for logging, input cleaning and formatting.
"""

import re
import logging
import sys
from decimal import Decimal
from typing import Optional, Union
from logging.handlers import RotatingFileHandler
from pathlib import Path


# ANSI color codes for console output
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to console output."""

    COLORS = {
        'DEBUG': Colors.GRAY,
        'INFO': Colors.BLUE,
        'WARNING': Colors.YELLOW,
        'ERROR': Colors.RED,
        'CRITICAL': f"{Colors.BOLD}{Colors.RED}",
    }

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy so file handlers sharing the record stay uncoloured
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, Colors.RESET)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.name = f"{Colors.CYAN}{record.name}{Colors.RESET}"
        return super().format(record)


def setup_logger(
    name: Optional[str] = None,
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: str = 'text',
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    colorful_console: bool = True
) -> logging.Logger:
    """
    Set up a logger with both console and file handlers.

    With ``name=None`` the root logger is configured, so every module-level
    ``logging.getLogger(__name__)`` logger inherits the handlers.

    Args:
        name: Logger name (None for the root logger)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        log_format: Format type ('text' or 'json')
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        colorful_console: Whether to use colored console output

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logger(None, 'DEBUG', 'logs/escrow.log')
        >>> logger.info('Application started')
    """
    logger = logging.getLogger(name)
    level = getattr(logging, log_level.upper())
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    if log_format == 'json':
        formatter_str = '{"time": "%(asctime)s", "name": "%(name)s", "level": "%(levelname)s", "message": "%(message)s"}'
    else:
        formatter_str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if colorful_console and log_format != 'json':
        console_handler.setFormatter(ColoredFormatter(formatter_str))
    else:
        console_handler.setFormatter(logging.Formatter(formatter_str))

    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(formatter_str))
        logger.addHandler(file_handler)

    return logger


def format_currency(amount: Union[Decimal, int, float], currency: str = 'npr') -> str:
    """
    Format amount as currency string.

    Example:
        >>> format_currency(Decimal('1234567.5'))
        'NPR 1,234,567.50'
    """
    return f"{currency.upper()} {Decimal(str(amount)):,.2f}"


def sanitize_input(text: Optional[str], max_length: int = 200) -> str:
    """
    Clean free-text user input.

    Strips markup brackets and control characters and truncates to
    ``max_length``.

    Example:
        >>> sanitize_input('<b>Logo design</b>\\x00')
        'bLogo design/b'
    """
    if not text:
        return ''

    text = text[:max_length]
    text = re.sub(r'[<>]', '', text)
    text = ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')

    return text.strip()


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging (e.g., payout account ids, secrets).

    Example:
        >>> mask_sensitive_data('acct_1234567890', 4)
        '***********7890'
    """
    if not data or len(data) <= visible_chars:
        return '*' * len(data) if data else ''

    masked_length = len(data) - visible_chars
    return '*' * masked_length + data[-visible_chars:]
