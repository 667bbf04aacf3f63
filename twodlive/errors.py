import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


# ----------------------------
# Error taxonomy
# ----------------------------
class AppError(Exception):
    status_code = 500
    message = "internal error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidInput(AppError):
    status_code = 400
    message = "invalid input"


class InvalidAmount(InvalidInput):
    message = "amount must be a positive number"


class Unauthorized(AppError):
    status_code = 401
    message = "unauthorized"


class Forbidden(AppError):
    status_code = 403
    message = "forbidden"


class NotFound(AppError):
    status_code = 404
    message = "not found"


class UserNotFound(NotFound):
    message = "user not found"


class Conflict(AppError):
    status_code = 409
    message = "conflict"


class DuplicateUsername(Conflict):
    message = "username already exists"


class StorageFailure(AppError):
    status_code = 500
    message = "storage failure"


class TransientConflict(StorageFailure):
    message = "too much contention, try again"


class InvalidToken(Exception):
    """Raised by the token verifier; the gate turns it into Unauthorized."""


class UpstreamUnavailable(Exception):
    """The external result feed could not be fetched or parsed."""


# ----------------------------
# Route boundary
# ----------------------------
def error_body(message: str, status_code: int) -> ORJSONResponse:
    return ORJSONResponse({"error": message}, status_code=status_code)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.warning("%s %s failed: %s",
                           request.method, request.url.path, exc.message)
        return error_body(exc.message, exc.status_code)

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else "error"
        return ORJSONResponse({"error": detail},
                              status_code=exc.status_code,
                              headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return error_body("invalid request body", 400)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s",
                         request.method, request.url.path)
        return error_body("internal error", 500)
