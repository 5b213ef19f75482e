"""Logging setup for the engine process."""
import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core.config import LoggingConfig

# Telegram bot tokens look like 123456789:AA...; they end up in webhook paths and API urls
BOT_TOKEN_RE = re.compile(r'(?<!\d)\d{5,}:[A-Za-z0-9_-]{30,}')

QUIET_LIBRARIES = ('aiogram', 'aiohttp.access', 'aiosqlite', 'apscheduler')


def scrub_token(token: str) -> str:
    """Shorten a secret token for log output."""
    if not token:
        return 'undefined'
    return f"{token[:6]}...{token[-4:]}"


def redact(text: str) -> str:
    return BOT_TOKEN_RE.sub(lambda m: scrub_token(m.group(0)), text)


class TokenRedactingFilter(logging.Filter):
    """Masks bot tokens in records coming from any library."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def setup_logging(config: LoggingConfig) -> None:
    """
    Route all records to a rotating file and stdout.

    Args:
        config: Logging configuration
    """
    Path(config.file).parent.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(config.level)
    root_logger.handlers.clear()

    redacting = TokenRedactingFilter()

    file_handler = RotatingFileHandler(
        filename=config.file,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding='utf-8'
    )
    file_handler.setFormatter(logging.Formatter(
        fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    file_handler.addFilter(redacting)
    root_logger.addHandler(file_handler)

    if config.console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(logging.Formatter(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%H:%M:%S'
        ))
        console_handler.addFilter(redacting)
        root_logger.addHandler(console_handler)

    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name, level in config.library_levels.items():
        logging.getLogger(name).setLevel(level.upper())
