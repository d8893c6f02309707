import logging
import os
import sys
from logging import Handler

from tqdm import tqdm

LOGGER_NAME = "l10n"

FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
# Status lines go to stdout through the Reporter; stderr only carries diagnostics.
CONSOLE_FORMAT = '%(levelname)s: %(message)s'


class TqdmLoggingHandler(Handler):
    """Emit records with ``tqdm.write`` so they appear above any progress bar."""

    def __init__(self, level=logging.NOTSET, stream=None):
        super().__init__(level)
        self.stream = stream

    def emit(self, record):
        try:
            tqdm.write(self.format(record), file=self.stream or sys.stderr)
        except (KeyboardInterrupt, SystemExit):
            raise
        except Exception:
            self.handleError(record)


def _file_handler(log_file_path: str) -> logging.FileHandler:
    log_dir = os.path.dirname(log_file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    handler = logging.FileHandler(log_file_path, encoding='utf-8')
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def setup_logger(log_level_str: str, log_file_path: str, log_to_console: bool) -> logging.Logger:
    """
    Configure the ``l10n`` package logger.

    Modules log through ``logging.getLogger(__name__)`` and so inherit the
    handlers installed here. Calling this again replaces them.

    Args:
        log_level_str: Level name such as 'INFO' or 'DEBUG'; unknown names mean INFO.
        log_file_path: Log file location. An empty string disables file logging.
        log_to_console: Also log to stderr through tqdm.

    Returns:
        The configured logger instance.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level_str.upper(), logging.INFO))

    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    logger.propagate = False

    if log_file_path:
        logger.addHandler(_file_handler(log_file_path))

    if log_to_console:
        console = TqdmLoggingHandler()
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        logger.addHandler(console)

    return logger
