"""Error handling for FastAPI application and workflow exceptions."""

import pydantic
from fastapi import Request
from fastapi import status
from fastapi.responses import JSONResponse
from loguru import logger

from reqflow_api.monitoring.logger import log_response_info
from reqflow_api.workflow.exceptions import RequestFlowError

# Explicit exports
__all__ = [
    "handle_broad_exceptions",
    "handle_pydantic_validation_errors",
    "handle_request_flow_errors",
]


# fastapi docs on middlewares: https://fastapi.tiangolo.com/tutorial/middleware/
async def handle_broad_exceptions(request: Request, call_next):
    """Handle any exception that goes unhandled by a more specific exception handler."""
    try:
        return await call_next(request)
    except Exception as err:  # pylint: disable=broad-except
        error_response = {"detail": "Internal server error", "error_type": type(err).__name__}

        logger.error(
            f"Unhandled exception: {type(err).__name__}: {str(err)}",
            http_status=500,
            http_method=request.method,
            url_path=str(request.url.path),
            error_type=type(err).__name__,
            error_message=str(err),
            exc_info=True,  # Include full traceback
        )

        response = JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_response,
        )
        log_response_info(response)
        return response


# fastapi docs on error handlers: https://fastapi.tiangolo.com/tutorial/handling-errors/
async def handle_pydantic_validation_errors(request: Request, exc: pydantic.ValidationError) -> JSONResponse:
    """Handle Pydantic validation errors."""
    errors = exc.errors()
    error_response = {
        "detail": [
            {
                "msg": error["msg"],
                "input": error["input"],
            }
            for error in errors
        ]
    }

    logger.warning(
        f"Validation error: {len(errors)} validation errors",
        http_status=422,
        http_method=request.method,
        url_path=str(request.url.path),
        error_type="ValidationError",
        validation_errors=errors,
    )

    response = JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_response,
    )
    log_response_info(response)

    return response


async def handle_request_flow_errors(request: Request, exc: RequestFlowError) -> JSONResponse:
    """
    Convert workflow errors to HTTP responses.

    Maps the workflow error taxonomy to HTTP status codes:
    - NotFound -> 404 Not Found
    - Forbidden -> 403 Forbidden
    - InvalidTransition -> 409 Conflict
    - ValidationError -> 400 Bad Request
    - Conflict -> 409 Conflict (retries exhausted)
    """
    error_response = exc.to_dict()

    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        f"Request workflow error: {exc.kind.value}: {exc.message}",
        http_status=exc.http_status,
        http_method=request.method,
        url_path=str(request.url.path),
        error_type=exc.kind.value,
        error_message=exc.message,
        error_context=exc.details,
    )

    response = JSONResponse(
        status_code=exc.http_status,
        content=error_response,
    )
    log_response_info(response)
    return response
