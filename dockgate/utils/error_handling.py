"""Centralized error handling utilities for secure error responses.

- Stack traces logged server-side only (not exposed to users)
- Generic user-facing error messages
- Best-effort cleanup failures logged without changing control flow

Security:
    - CWE-209: Generation of Error Message Containing Sensitive Information
"""

import logging

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession


def safe_error_response(
    logger_instance: logging.Logger,
    error: Exception,
    user_message: str,
    status_code: int = 500,
    log_level: str = "error",
) -> None:
    """Log full error details server-side and raise generic HTTPException for user.

    Args:
        logger_instance: Logger instance to use for server-side logging
        error: The exception that was caught
        user_message: Generic message to show to the user (should not contain sensitive details)
        status_code: HTTP status code for the response (default: 500)
        log_level: Logging level to use (error, warning, info) (default: error)

    Raises:
        HTTPException: With the user_message as detail
    """
    log_method = getattr(logger_instance, log_level, logger_instance.error)
    log_method(f"{user_message}: {type(error).__name__}", exc_info=True)

    raise HTTPException(status_code=status_code, detail=user_message)


def log_and_continue(
    logger_instance: logging.Logger,
    error: Exception,
    context_message: str,
    log_level: str = "warning",
) -> None:
    """Log error but continue execution (for non-critical errors).

    Use this for errors that should be logged but don't require halting execution,
    such as best-effort cleanup of temporary image tags.

    Args:
        logger_instance: Logger instance to use
        error: The exception that was caught
        context_message: Context about where/why this error occurred
        log_level: Logging level to use (default: warning)

    Examples:
        >>> logger = logging.getLogger(__name__)
        >>> try:
        ...     await runtime.remove_image(ctx, temp_tag)
        >>> except Exception as e:
        ...     log_and_continue(logger, e, "Failed to remove temporary tag")
    """
    log_method = getattr(logger_instance, log_level, logger_instance.warning)
    log_method(f"{context_message}: {type(error).__name__}: {error}", exc_info=True)


async def safe_rollback(logger_instance: logging.Logger, db: AsyncSession, context_message: str) -> None:
    """Roll back a session without letting a dead connection escape.

    A rollback that fails (for example because the database connection was
    lost) is logged via log_and_continue and otherwise ignored.
    """
    try:
        await db.rollback()
    except Exception as e:
        log_and_continue(logger_instance, e, f"{context_message}: rollback failed")
