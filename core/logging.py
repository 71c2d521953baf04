import logging
import os
import sys
import json
from logging.handlers import RotatingFileHandler
from pathlib import Path

# --- Constants ---
LOG_DIR = Path(os.getenv("LOG_DIR") or Path(__file__).resolve().parent.parent / 'logs')
LOG_FILE = LOG_DIR / 'app.log'
MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5
LOGGER_NAME = "prdgen"

class JsonFormatter(logging.Formatter):
    """
    Formats log records as a JSON string.
    """
    def format(self, record):
        log_object = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_object['exc_info'] = self.formatException(record.exc_info)

        return json.dumps(log_object)

def setup_logging(log_level=None):
    """
    Configures the application logger.
    - Console: Human-readable plain text.
    - File: Machine-readable JSON, with rotation.

    Only the ``prdgen`` logger is configured so that uvicorn and pytest keep
    their own handlers on the root logger.
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    LOG_DIR.mkdir(parents=True, exist_ok=True)

    app_logger = logging.getLogger(LOGGER_NAME)
    app_logger.setLevel(log_level)

    # --- Formatters ---
    plain_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    json_formatter = JsonFormatter()

    # --- Console Handler ---
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(plain_formatter)

    # --- Rotating File Handler (JSON) ---
    file_handler = RotatingFileHandler(
        LOG_FILE,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(json_formatter)

    # Clear existing handlers to avoid duplicates
    if app_logger.hasHandlers():
        app_logger.handlers.clear()

    app_logger.addHandler(console_handler)
    app_logger.addHandler(file_handler)

    return app_logger

# --- Initial Setup ---
# Initialize logging when the module is imported
logger = setup_logging()
