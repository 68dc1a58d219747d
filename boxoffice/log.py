"""Logging setup: everything goes through loguru."""

import logging
import sys

from loguru import logger

from .config import LOG_LEVEL

log_format = ' | '.join(
    (
        '<lk>{time:YYYY-MM-DD HH:mm:ss.SSS}</>',
        '<lvl>{level:<8}</>',
        '<c>{name}:{function}:{line}</>',
        '{message}',
    )
)


class InterceptHandler(logging.Handler):
    """Redirect standard logging records (uvicorn, sqlalchemy) to loguru."""

    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # find the caller the record originated from
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


_configured = False


def setup(level: str = LOG_LEVEL) -> None:
    global _configured
    if _configured:
        return
    logger.remove()
    logger.add(sys.stderr, format=log_format, level=level)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        std = logging.getLogger(name)
        std.handlers = [InterceptHandler()]
        std.propagate = False
    # sqlalchemy echoes every statement at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    _configured = True
