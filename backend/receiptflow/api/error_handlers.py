"""
Custom exception handlers for FastAPI.
Maps receipt domain errors to HTTP responses and gives clear, actionable
messages for validation and server errors.
"""

import logging

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
)

from receiptflow.core.errors import (
    DeleteFailed,
    FileNotFoundInStorage,
    InvalidStatusTransition,
    ReceiptError,
    ReceiptNotFound,
    Unauthorized,
)
from receiptflow.core.observability import sentry_capture

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (ReceiptNotFound, HTTP_404_NOT_FOUND),
    (FileNotFoundInStorage, HTTP_404_NOT_FOUND),
    (Unauthorized, HTTP_403_FORBIDDEN),
    (InvalidStatusTransition, HTTP_409_CONFLICT),
    (DeleteFailed, HTTP_502_BAD_GATEWAY),
)


def status_for(exc: ReceiptError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return HTTP_500_INTERNAL_SERVER_ERROR


def receipt_error_handler(request: Request, exc: ReceiptError):
    code = status_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        sentry_capture(exc)
    return JSONResponse(
        status_code=code,
        content={
            "error": exc.code,
            "details": exc.reason,
            "receipt_id": exc.receipt_id,
        },
    )


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    sentry_capture(exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "details": str(exc),
        },
    )
