import logging
import logging.handlers
import os
import sys
from datetime import datetime

# ANSI colour codes keyed by the short level tag
COLORS = {
    'DBG': '\033[36m',
    'INF': '\033[32m',
    'WRN': '\033[33m',
    'ERR': '\033[31m',
    'CRT': '\033[91m\033[1m',
    'RST': '\033[0m'
}

LOG_DIR = "logs"
LOG_FILE_NAME = "polaris-bridge.log"

# Secrets that must never reach a log line; filled by register_sensitive()
# once the driver config has been loaded.
_sensitive: set[str] = set()

logger = logging.getLogger('bridge')
logger.setLevel(logging.DEBUG)


def register_sensitive(values) -> None:
    """Register secret strings (tokens, api keys) to redact from log output."""
    # Very short values would mask ordinary words
    _sensitive.update(v for v in values if v and len(v) >= 8)


class MaskingFilter(logging.Filter):
    """Replaces every registered secret in the rendered message with ``***``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if _sensitive:
            msg = record.getMessage()
            for secret in _sensitive:
                if secret in msg:
                    msg = msg.replace(secret, "***")
            record.msg = msg
            record.args = ()
        return True


class ConsoleFormatter(logging.Formatter):
    tags = {
        'DEBUG': '[DBG]',
        'INFO': '[INF]',
        'WARNING': '[WRN]',
        'ERROR': '[ERR]',
        'CRITICAL': '[CRT]'
    }

    def __init__(self, colored: bool):
        super().__init__()
        self.colored = colored

    def format(self, record):
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        tag = self.tags.get(record.levelname, f'[{record.levelname}]')
        if self.colored and tag[1:4] in COLORS:
            tag = COLORS[tag[1:4]] + tag + COLORS['RST']

        message = record.getMessage()
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return f"{timestamp} {tag} | {record.module}:{record.lineno} | {message}"


def setup_logging(level: str = "INFO", log_dir: str | None = LOG_DIR) -> logging.Logger:
    """Attach console and rotating-file handlers to the bridge logger.

    Safe to call more than once; previous handlers are closed and replaced.
    Pass ``log_dir=None`` to log to the console only.
    """
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = False
    masking = MaskingFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ConsoleFormatter(colored=sys.stdout.isatty()))
    console_handler.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    console_handler.addFilter(masking)
    logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        # Hourly files, one week kept
        file_handler = logging.handlers.TimedRotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME),
            when='H',
            backupCount=7 * 24,
            encoding='utf-8',
        )
        file_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] [%(levelname)s] | %(filename)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(masking)
        logger.addHandler(file_handler)

    return logger


def get_logger(name=None):
    """Return the shared bridge logger, or a child of it when *name* is given."""
    if name:
        return logger.getChild(name)
    return logger
