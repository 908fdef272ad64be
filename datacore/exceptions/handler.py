from typing import Any, Optional
from pydantic import BaseModel
from datacore.config import settings
from datacore.logging.logger import get_logger
from .errors import DataAccessError, StoreFailure

logger = get_logger("exception_handler")


class ErrorResponse(BaseModel):
    """Envelope handed to a presentation layer for a failed data access call."""
    code: int = 500
    message: str = "error"
    error_type: str = "InternalError"
    data: Optional[Any] = None


def error_payload(exc: Exception, session_id: Optional[str] = None) -> dict:
    """Log exc and convert it to an ErrorResponse dict."""
    trace_id = session_id or "unknown"

    if isinstance(exc, StoreFailure):
        logger.critical(f"Trace[{trace_id}] - StoreFailure: {exc.message}")
        return ErrorResponse(
            code=exc.code,
            message="Store temporarily unavailable",
            error_type=type(exc).__name__,
            data={"cause": repr(exc.__cause__)} if settings.DEBUG and exc.__cause__ else None,
        ).model_dump()

    if isinstance(exc, DataAccessError):
        logger.warning(f"Trace[{trace_id}] - {type(exc).__name__}: {exc.message}")
        return ErrorResponse(
            code=exc.code,
            message=exc.message,
            error_type=type(exc).__name__,
            data=exc.detail,
        ).model_dump()

    logger.opt(exception=exc).error(f"Trace[{trace_id}] - UncaughtException: {str(exc)}")
    return ErrorResponse(
        code=500,
        message="System busy, please try again later",
        data={"trace_id": trace_id} if settings.DEBUG else None,
    ).model_dump()
