"""
Custom exception handlers for FastAPI.
Provides clear, actionable error messages for pipeline, validation and server errors.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exception_handlers import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY, HTTP_500_INTERNAL_SERVER_ERROR

from buildledger.core.exceptions import ReceiptPipelineError
from buildledger.core.observability import capture_exception, sentry_metric_inc

logger = logging.getLogger(__name__)


def pipeline_exception_handler(request: Request, exc: ReceiptPipelineError):
    body = exc.to_dict()
    body["details"] = {"path": request.url.path}
    if exc.status_code >= 500:
        logger.error(
            "[api] %s %s failed code=%s key=%s: %s",
            request.method,
            request.url.path,
            exc.code,
            exc.key,
            exc.message,
            exc_info=exc.__cause__,
        )
    sentry_metric_inc("api.pipeline_error", tags={"code": exc.code})
    headers = {"Retry-After": "5"} if exc.retriable and exc.status_code == 503 else None
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "code": "validation_error",
            "details": jsonable_encoder(exc.errors()),
            "retriable": False,
        },
    )


def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("[api] unhandled error on %s %s", request.method, request.url.path)
    capture_exception(exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "code": "internal_error",
            "details": str(exc),
            "retriable": False,
        },
    )
