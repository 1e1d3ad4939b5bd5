"""
Centralized error definitions and user-friendly message mapping.
Service-layer errors are raised as MirrorError subclasses and rendered by
mirror_exception_handler; remote client errors are mapped through ERROR_MAP.
"""
import logging

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class MirrorError(Exception):
    """Base class for mirror errors with user message and status code."""
    status_code: int = 500
    user_message: str = "Something went wrong. Please try again."

    def __init__(self, detail: str | None = None):
        self.detail = detail
        super().__init__(detail or self.user_message)


class WebhookSignatureError(MirrorError):
    status_code = 401
    user_message = "Invalid webhook signature"


class MalformedPayloadError(MirrorError):
    status_code = 400
    user_message = "Malformed webhook delivery"


class AuthenticationRequiredError(MirrorError):
    status_code = 401
    user_message = "Not authenticated"


class RepositoryAccessDeniedError(MirrorError):
    status_code = 403
    user_message = "You do not have access to this repository"


class InvalidReferenceError(MirrorError):
    status_code = 400

    def __init__(self, field: str, value: int | None):
        self.field = field
        self.value = value
        self.user_message = f"Invalid {field}: {value} does not exist"
        super().__init__(self.user_message)


class RepositoryNotFoundError(MirrorError):
    status_code = 404
    user_message = "Repository not found"


class IssueNotFoundError(MirrorError):
    status_code = 404
    user_message = "Issue not found"


class NotificationNotFoundError(MirrorError):
    status_code = 404
    user_message = "Notification not found"


class SubscriptionNotFoundError(MirrorError):
    status_code = 404
    user_message = "Not subscribed to this repository"


class SyncRunNotFoundError(MirrorError):
    status_code = 404
    user_message = "Sync run not found"


class SyncInProgressError(MirrorError):
    status_code = 409
    user_message = "This repository is already being synced"


ERROR_MAP = {
    "GitHubRateLimitError": (503, "GitHub is busy. We'll try again shortly."),
    "GitHubAuthError": (401, "GitHub credential rejected. Please sign in again."),
    "GitHubNotFoundError": (404, "Not found on GitHub"),
    "GitHubAPIError": (503, "GitHub is unavailable. Please try again."),
}


def handle_mirror_error(exc: Exception) -> HTTPException:
    """
    Converts mirror and remote exceptions to HTTP responses with user-friendly messages.
    Logs detailed error info server-side.
    """
    error_name = type(exc).__name__

    if isinstance(exc, MirrorError):
        logger.warning(
            f"Mirror error: {error_name}, detail={exc.detail}, user_message={exc.user_message}"
        )
        return HTTPException(
            status_code=exc.status_code,
            detail=exc.user_message,
        )

    if error_name in ERROR_MAP:
        status_code, user_message = ERROR_MAP[error_name]
        message = user_message or str(exc)
        logger.warning(f"Mapped error: {error_name}, message={message}")
        return HTTPException(status_code=status_code, detail=message)

    logger.error(f"Unhandled mirror error: {error_name}, detail={exc}")
    return HTTPException(
        status_code=500,
        detail="Something went wrong. Please try again.",
    )


async def mirror_exception_handler(request: Request, exc: MirrorError) -> JSONResponse:
    """FastAPI exception handler for MirrorError subclasses."""
    logger.warning(
        f"Mirror error handler: {type(exc).__name__}, "
        f"path={request.url.path}, user_message={exc.user_message}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.user_message},
    )


async def remote_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """FastAPI exception handler for remote client errors that escape a route."""
    http_exc = handle_mirror_error(exc)
    return JSONResponse(
        status_code=http_exc.status_code,
        content={"detail": http_exc.detail},
    )


__all__ = [
    "MirrorError",
    "WebhookSignatureError",
    "MalformedPayloadError",
    "AuthenticationRequiredError",
    "RepositoryAccessDeniedError",
    "InvalidReferenceError",
    "RepositoryNotFoundError",
    "IssueNotFoundError",
    "NotificationNotFoundError",
    "SubscriptionNotFoundError",
    "SyncRunNotFoundError",
    "SyncInProgressError",
    "handle_mirror_error",
    "mirror_exception_handler",
    "remote_exception_handler",
    "ERROR_MAP",
]
