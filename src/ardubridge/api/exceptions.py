"""Exception handling utilities for HTTP routes.

Provides factories and a decorator for consistent error responses across the
relay and bridge HTTP surfaces.
"""

import functools
import logging
from typing import Any, Callable, TypeVar, cast

from fastapi import HTTPException

from ..errors import ArduBridgeError, ErrorCode

logger = logging.getLogger(__name__)

# TypeVar for wrapping async functions
F = TypeVar("F", bound=Callable[..., Any])


# ============================================================================
# HTTP Error Factory Functions
# ============================================================================


def bridge_not_found(bridge_id: str) -> HTTPException:
    """Create a standardized 404 error for an unknown bridge.

    Args:
        bridge_id: Bridge identifier that was not found

    Returns:
        HTTPException with 404 status and formatted message
    """
    return HTTPException(status_code=404, detail=f"Bridge not found: {bridge_id}")


def arduino_not_connected() -> HTTPException:
    """Create a standardized 503 error when no serial device is attached.

    Returns:
        HTTPException with 503 status
    """
    return HTTPException(status_code=503, detail="Arduino not connected")


def no_boards_detected() -> HTTPException:
    """Create a standardized 404 error when port detection finds nothing.

    Returns:
        HTTPException with 404 status
    """
    return HTTPException(status_code=404, detail="No Arduino boards detected")


def upload_failed(message: str) -> HTTPException:
    """Create a standardized 500 error for a failed firmware upload.

    Args:
        message: Reason reported by the upload tool

    Returns:
        HTTPException with 500 status and formatted message
    """
    return HTTPException(status_code=500, detail=f"Upload failed: {message}")


# Status code for each error category surfaced over HTTP.
_STATUS_BY_CODE = {
    ErrorCode.INVALID_PARAMETER: 422,
    ErrorCode.UNKNOWN_COMMAND: 400,
    ErrorCode.PROTOCOL_ERROR: 400,
    ErrorCode.NOT_CONNECTED: 503,
    ErrorCode.BRIDGE_UNAVAILABLE: 503,
    ErrorCode.COMMAND_TIMEOUT: 504,
    ErrorCode.COMMAND_FAILED: 502,
    ErrorCode.CREDENTIAL_REQUIRED: 401,
    ErrorCode.INVALID_CREDENTIAL: 401,
    ErrorCode.MODEL_ERROR: 502,
    ErrorCode.INTERNAL_ERROR: 500,
}


def from_error(error: ArduBridgeError) -> HTTPException:
    """Translate an application error into an HTTPException.

    Args:
        error: Application error raised by a command or link

    Returns:
        HTTPException whose detail carries the error dictionary
    """
    return HTTPException(status_code=_STATUS_BY_CODE.get(error.code, 500), detail=error.to_dict())


# ============================================================================
# Error Handling Decorators
# ============================================================================


def handle_command_errors(func: F) -> F:
    """Decorator translating application errors raised by a route.

    - HTTPException: Pass through (already formatted for response)
    - ArduBridgeError: Mapped onto a status code by error category

    Usage:
        @app.post("/arduino/command")
        @handle_command_errors
        async def send_command(body: CommandRequest):
            ...
    """

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await func(*args, **kwargs)
        except HTTPException:
            raise
        except ArduBridgeError as e:
            logger.warning(f"{func.__name__} failed: {e.message}")
            raise from_error(e) from e

    return cast(F, wrapper)
