"""
Typed errors raised by the integrity components and their HTTP mapping.
"""
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError


logger = structlog.get_logger(__name__)


class ServiceIntegrityError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__


class ValidationError(ServiceIntegrityError):
    status_code = 400
    code = "validation_error"


class AuthenticationError(ServiceIntegrityError):
    status_code = 401
    code = "unauthenticated"


class AuthorizationError(ServiceIntegrityError):
    status_code = 403
    code = "forbidden"


class NotFoundError(ServiceIntegrityError):
    status_code = 404
    code = "not_found"


class ConflictError(ServiceIntegrityError):
    status_code = 409
    code = "conflict"


class InternalError(ServiceIntegrityError):
    status_code = 500
    code = "internal_error"


def _error_response(status_code: int, code: str, detail) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "detail": detail})


async def _handle_integrity_error(request: Request, exc: ServiceIntegrityError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.code, detail=exc.detail)
    return _error_response(exc.status_code, exc.code, exc.detail)


async def _handle_request_validation(request: Request, exc: RequestValidationError):
    # Same 400 shape as domain validation failures
    errors = [
        {"loc": list(e.get("loc", [])), "msg": e.get("msg")}
        for e in exc.errors()
    ]
    return _error_response(400, ValidationError.code, errors)


async def _handle_datastore_error(request: Request, exc: SQLAlchemyError):
    # Reads outside a component operation; the request session is rolled back on close
    logger.error("datastore_error", path=request.url.path, error=str(exc))
    return _error_response(InternalError.status_code, InternalError.code, "Datastore failure")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceIntegrityError, _handle_integrity_error)
    app.add_exception_handler(RequestValidationError, _handle_request_validation)
    app.add_exception_handler(SQLAlchemyError, _handle_datastore_error)
