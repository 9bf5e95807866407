import sys
from loguru import logger


def setup_logging(level="INFO", show_time=True):
    """Configure loguru for the solver core.

    Parameters
    ----------
    level : str
        Logging level (TRACE, DEBUG, INFO, SUCCESS, WARNING, ERROR, CRITICAL)
    show_time : bool
        Whether to show timestamps in the output.
    """
    logger.remove()

    prefix = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | " if show_time else ""
    log_format = (
        prefix
        + "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )

    logger.add(sys.stderr, format=log_format, level=level, colorize=True)

    return logger


def configure_from(settings):
    """Apply a ``LoggingSettings`` section (see ``dgsolve.config``)."""
    return setup_logging(level=settings.level, show_time=settings.show_time)


# Default setup
setup_logging()
