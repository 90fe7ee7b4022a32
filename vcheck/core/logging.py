import logging
import sys
from vcheck.core.config import get_settings

settings = get_settings()

def setup_logging():
    """
    Configures the standard Python logging module for the check engine.
    """
    log_level = logging.INFO
    if settings.DEBUG:
        log_level = logging.DEBUG

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Avoid duplicate handlers if setup is called multiple times
    if not root_logger.handlers:
        root_logger.addHandler(console_handler)

    # Set levels for some noisy loggers
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    logging.info(f"Logging initialized with level: {logging.getLevelName(log_level)}")
