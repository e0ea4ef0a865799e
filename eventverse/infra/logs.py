import sys

from loguru import logger

from .. import settings


def setup_logging(level: str | None = None, json: bool | None = None) -> None:
    """Replace loguru's default sink with one honoring LOG_LEVEL/LOG_JSON."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.LOG_LEVEL).upper(),
        serialize=settings.LOG_JSON if json is None else json,
        backtrace=False,
        diagnose=False,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{line}</cyan> - {message}"
        ),
    )
