import logging
from datetime import datetime
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).parent.parent.parent.parent.parent
LOG_DIR = PROJECT_ROOT / "logs" / "polygon_proxy"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logger(
    name: str, level: Union[int, str] = logging.INFO, log_to_file: bool = False
) -> logging.Logger:
    """
    Configure the package logger once; modules below `name` inherit it.

    Args:
        name: Logger name, normally the package name
        level: Logging level, int or name such as "DEBUG"
        log_to_file: Also write a daily file under LOG_DIR
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler()]

    if log_to_file:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        log_filepath = LOG_DIR / f"{name}_{datetime.now().strftime('%Y%m%d')}.log"
        handlers.append(logging.FileHandler(log_filepath, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if log_to_file:
        logger.info(f"Logging to file: {log_filepath}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """Module logger; handlers come from the package logger"""
    return logging.getLogger(name)
