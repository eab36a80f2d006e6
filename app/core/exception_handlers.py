"""
DRF exception handler for application errors.

Views let service exceptions propagate; this handler renders any
BaseApplicationError with its to_dict() payload and a status code derived
from the exception class. Everything else is delegated to DRF's default
handler.

Configured in settings:
    REST_FRAMEWORK = {
        "EXCEPTION_HANDLER": "core.exception_handlers.application_exception_handler",
    }
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)

# Checked in order; the first matching base class wins.
STATUS_BY_ERROR: list[tuple[type[BaseApplicationError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ExternalServiceError, status.HTTP_502_BAD_GATEWAY),
]


def status_for(exc: BaseApplicationError) -> int:
    """
    Resolve the HTTP status for an application error.

    An exception class may pin its own status with an ``http_status``
    attribute; otherwise the first matching entry of STATUS_BY_ERROR is used.
    """
    explicit = getattr(exc, "http_status", None)
    if explicit:
        return explicit
    for error_class, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_class):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def application_exception_handler(exc: Exception, context: dict[str, Any]) -> Response | None:
    """Render BaseApplicationError subclasses; defer the rest to DRF."""
    if not isinstance(exc, BaseApplicationError):
        return exception_handler(exc, context)

    status_code = status_for(exc)
    view = context.get("view")
    log_level = logging.ERROR if status_code >= 500 else logging.INFO
    logger.log(
        log_level,
        f"Application error in {view.__class__.__name__ if view else 'unknown view'}: {exc}",
        extra={"error_code": exc.error_code, "status_code": status_code},
    )

    response = Response(exc.to_dict(), status=status_code)
    retry_after = exc.details.get("retry_after") if exc.details else None
    if retry_after is not None:
        response["Retry-After"] = str(retry_after)
    return response
