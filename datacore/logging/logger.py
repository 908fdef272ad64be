import sys
from pathlib import Path
from contextvars import ContextVar
from typing import Optional
from loguru import logger
from datacore.config import settings

# Session id of the unit of work currently running in this async context
_current_session: ContextVar[Optional[str]] = ContextVar("current_session", default=None)


class LogConfig:
    """Global logging configuration using Loguru."""
    @classmethod
    def setup_logging(cls, level: Optional[str] = None, to_file: Optional[bool] = None):
        logger.remove()

        level = level or settings.LOG_LEVEL
        to_file = settings.LOG_TO_FILE if to_file is None else to_file

        logger.add(
            sys.stdout,
            enqueue=True,
            backtrace=True,
            diagnose=settings.DEBUG,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "<magenta>Trace:{extra[trace_id]}</magenta> - <level>{message}</level>"
            ),
            level=level,
        )

        if to_file:
            log_dir = Path(settings.LOG_DIR)
            log_dir.mkdir(exist_ok=True)

            logger.add(
                log_dir / "datacore_{time:YYYY-MM-DD}.log",
                rotation="00:00",
                retention="30 days",
                compression="zip",
                enqueue=True,
                format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | Trace:{extra[trace_id]} - {message}",
                level="DEBUG",
            )

            logger.add(
                log_dir / "error_{time:YYYY-MM-DD}.log",
                level="ERROR",
                rotation="100 MB",
                enqueue=True,
            )

        logger.configure(extra={"trace_id": "system"})


def bind_session(session_id: str):
    """Make session_id the trace id of logs emitted in the current context; returns a reset token."""
    return _current_session.set(session_id)


def unbind_session(token) -> None:
    _current_session.reset(token)


def get_logger(name: str = None, session_id: Optional[str] = None):
    """Get logger instance; optionally pass session_id for trace_id, else from context."""
    trace_id = session_id or _current_session.get() or "system"

    if name:
        return logger.bind(name=name, trace_id=trace_id)
    else:
        return logger.bind(trace_id=trace_id)
