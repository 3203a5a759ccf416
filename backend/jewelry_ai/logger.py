import logging
import sys
from typing import Optional
from pythonjsonlogger import jsonlogger
from .config import settings

def setup_logger(name: str = "jewelry_ai", level: Optional[str] = None) -> logging.Logger:
    """
    Configure structured JSON logging for the service.

    The level comes from ``LOG_LEVEL`` unless given; unknown names fall back
    to INFO. Handlers are attached once per logger name, so repeated imports
    from the API process and the Celery worker do not duplicate output.
    """
    logger = logging.getLogger(name)
    level_name = (level or settings.LOG_LEVEL).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)

    formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger

logger = setup_logger()
