"""
Logging setup for the chat gateway.

Everything goes through loguru. Stdlib loggers (uvicorn, fastapi, pymongo and
the gateway event bus) are intercepted so one set of sinks sees all records.
Per-connection records carry ``connection_id`` / ``user_id`` in ``extra``.
"""
import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

from loguru import logger

INTERCEPTED_LOGGERS = (
    "uvicorn",
    "uvicorn.access",
    "uvicorn.error",
    "fastapi",
    "pymongo",
    "ChatGateway.Events",
)

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | {extra[connection_id]} - <level>{message}</level>"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | "
    "{extra[connection_id]} {extra[user_id]} | {message}"
)


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk up to the caller so file name and line number are correct.
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def connection_logger(connection_id: str, user_id: Optional[str] = None):
    """Logger bound to one socket; the file sink prints the binding."""
    if user_id:
        return logger.bind(connection_id=connection_id, user_id=user_id)
    return logger.bind(connection_id=connection_id)


def setup_logger(
    log_dir: str = "logs",
    level: str = "INFO",
    intercept: Iterable[str] = INTERCEPTED_LOGGERS,
):
    """
    Configure the global logger.
    :param log_dir: directory for chat.log and error.log
    :param level: console log level
    :param intercept: stdlib logger names routed into loguru
    """
    logger.remove()
    logger.configure(extra={"connection_id": "-", "user_id": "-"})
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    # Everything, rotated at midnight.
    logger.add(
        f"{log_dir}/chat.log",
        rotation="00:00",
        retention="10 days",
        compression="zip",
        enqueue=True,
        level="DEBUG",
        format=FILE_FORMAT,
    )

    logger.add(
        f"{log_dir}/error.log",
        rotation="10 MB",
        retention="30 days",
        level="ERROR",
        backtrace=True,
        diagnose=False,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for logger_name in intercept:
        mod_logger = logging.getLogger(logger_name)
        mod_logger.handlers = [InterceptHandler()]
        mod_logger.propagate = False

    logger.info(f"Logging initialized: console={level}, files in {log_dir}")
    return logger
