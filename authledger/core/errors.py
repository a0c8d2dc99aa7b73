"""
AuthLedger — core/errors.py
─────────────────────────────────────────────────────────────────
Domain error taxonomy + the FastAPI handlers that turn every
failure into one envelope:

    {"success": false, "code": "NOT_FOUND", "detail": "User not found"}

Services raise these; routes never build error responses by hand.
─────────────────────────────────────────────────────────────────
"""

import logging
import sqlite3

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("authledger.errors")


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class AppError(Exception):
    """Base application exception."""
    status_code = 500
    code        = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class BadRequestError(AppError):
    status_code = 400
    code        = "BAD_REQUEST"

class InvalidAmountError(BadRequestError):
    """Amount is zero or negative."""
    code = "INVALID_AMOUNT"

class InsufficientBalanceError(BadRequestError):
    """Wallet doesn't hold enough to cover a debit."""
    code = "INSUFFICIENT_BALANCE"

class InvalidReferralCodeError(BadRequestError):
    code = "INVALID_REFERRAL_CODE"

class UnauthorizedError(AppError):
    status_code = 401
    code        = "UNAUTHORIZED"

class ForbiddenError(AppError):
    status_code = 403
    code        = "FORBIDDEN"

class NotFoundError(AppError):
    status_code = 404
    code        = "NOT_FOUND"

class ConflictError(AppError):
    status_code = 409
    code        = "CONFLICT"

class InternalError(AppError):
    pass


# ─────────────────────────────────────────────
# Response helpers
# ─────────────────────────────────────────────
def ok(data=None, message: str = "OK", **extra) -> dict:
    """Success envelope used by every route."""
    body = {"success": True, "message": message, "data": data}
    body.update(extra)
    return body


def _error(status_code: int, code: str, detail, **extra) -> JSONResponse:
    return JSONResponse(
        status_code = status_code,
        content     = {"success": False, "code": code, "detail": detail, **extra},
    )


# ─────────────────────────────────────────────
# Handlers
# ─────────────────────────────────────────────
def register_exception_handlers(app: FastAPI, is_production: bool):

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        detail = exc.message
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} → {exc.code}: {exc.message}")
            if is_production:
                detail = "Internal server error"
        return _error(exc.status_code, exc.code, detail)

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field":   ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        return _error(400, "VALIDATION_ERROR", "Validation failed", errors=errors)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}.get(exc.status_code, "HTTP_ERROR")
        return _error(exc.status_code, code, exc.detail)

    @app.exception_handler(sqlite3.IntegrityError)
    async def integrity_handler(request: Request, exc: sqlite3.IntegrityError):
        logger.warning(f"Constraint violation on {request.url.path}: {exc}")
        return _error(409, "CONFLICT", "Resource already exists or violates a constraint")

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        detail = "Internal server error" if is_production else str(exc)
        return _error(500, "INTERNAL_ERROR", detail)
