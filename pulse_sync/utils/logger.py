"""
Logging configuration

One loguru logger for the whole engine. Import it as:

    from pulse_sync.utils.logger import log
"""
from loguru import logger
import sys
from pulse_sync.config import Settings, get_settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logger(settings: Settings = None):
    """Console sink always; sync and error files under ``log_dir`` when it is set"""
    settings = settings or get_settings()
    logger.remove()

    logger.add(sys.stdout, colorize=True, format=CONSOLE_FORMAT, level=settings.log_level)

    if not settings.log_dir:
        return logger

    # Sync runs, rotated daily
    logger.add(
        f"{settings.log_dir}/pulse_sync_{{time:YYYY-MM-DD}}.log",
        rotation="00:00",
        retention="30 days",
        compression="zip",
        level=settings.log_level,
        enqueue=True,
    )

    # Fatal and per-period failures only
    logger.add(
        f"{settings.log_dir}/errors_{{time:YYYY-MM-DD}}.log",
        rotation="00:00",
        retention="90 days",
        level="ERROR",
        backtrace=True,
        enqueue=True,
    )

    return logger


log = setup_logger()
