import logging
import os
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(log_dir: str = "logs", log_to_file: bool = True, level: int = logging.INFO):
    """
    Configure logging with daily rotating file handler
    Creates log files with format: log_YYYY-MM-DD.txt
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    if log_to_file:
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)

        today = datetime.now().strftime("%Y-%m-%d")
        log_filename = os.path.join(log_dir, f"log_{today}.txt")

        file_handler = TimedRotatingFileHandler(
            filename=log_filename,
            when='midnight',  # Rotate at midnight
            interval=1,       # Every 1 day
            backupCount=30,   # Keep 30 days of logs
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)

    # Console handler for development
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    return logging.getLogger("app")
