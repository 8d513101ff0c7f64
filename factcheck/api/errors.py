"""Exception handlers mapping application errors to HTTP responses."""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from factcheck.core.exceptions import (
    AppError,
    ClaimNotFoundError,
    InputValidationError,
    PermissionDeniedError,
    SessionNotFoundError,
    StateTransitionError,
)
from factcheck.utils.logging import get_logger
from factcheck.utils.responses import create_error_detail

LOGGER = get_logger(__name__)

ERROR_STATUS = (
    (InputValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "Invalid input"),
    (SessionNotFoundError, status.HTTP_404_NOT_FOUND, "Not found"),
    (ClaimNotFoundError, status.HTTP_404_NOT_FOUND, "Not found"),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN, "Forbidden"),
    (StateTransitionError, status.HTTP_409_CONFLICT, "Invalid session state"),
)


def _error_response(request: Request, status_code: int, title: str, detail: str) -> JSONResponse:
    body = create_error_detail(title=title, status=status_code, detail=detail, request=request)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    for error_type, status_code, title in ERROR_STATUS:
        if isinstance(exc, error_type):
            LOGGER.info(
                f"{title}: {exc.message}",
                extra={"path": request.url.path, "status_code": status_code}
            )
            return _error_response(request, status_code, title, exc.message)

    LOGGER.error(f"Unhandled application error: {exc.message}", extra={"path": request.url.path}, exc_info=exc)
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", exc.message)


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    LOGGER.error("Database error", extra={"path": request.url.path}, exc_info=exc)
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "A database error occurred",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
