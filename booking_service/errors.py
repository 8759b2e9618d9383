import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import DEBUG

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    default_message = "Internal Server Error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation Error"


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class ForbiddenError(AppError):
    status_code = 403
    default_message = "Access forbidden"


class InvalidStateTransition(AppError):
    status_code = 400
    default_message = "Invalid booking status transition"


class ConcurrentModification(AppError):
    status_code = 409
    default_message = "Booking was modified by another request, retry"


class ExternalServiceError(AppError):
    status_code = 502
    default_message = "Upstream service failure"


# ---- Coupons ----

class CouponError(AppError):
    status_code = 400
    default_message = "Coupon cannot be applied"


class CouponNotFound(CouponError):
    default_message = "Invalid or expired coupon code"


class CouponExhausted(CouponError):
    default_message = "Coupon has reached maximum usage limit"


class CouponMinOrderNotMet(CouponError):
    default_message = "Minimum order value not met for this coupon"


class CouponNotApplicable(CouponError):
    default_message = "Coupon not applicable for this service"


def error_body(message: str, error: Optional[Any] = None, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "message": message}
    body.update(extra)
    if error is not None:
        body["error"] = error
    return body


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, type(exc).__name__ if DEBUG else None, **exc.extra),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(message),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            errors.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return JSONResponse(status_code=400, content=error_body("Validation Error", errors=errors))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_body("Internal Server Error", repr(exc) if DEBUG else None),
        )
