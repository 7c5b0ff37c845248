# core/errors.py
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ========================================
# ❗ Application error taxonomy
# ========================================
class AppError(HTTPException):
    """
    Base error for the billing service. Subclasses HTTPException so FastAPI
    routes can raise it directly; the registered handler renders a flat body.
    """

    status_code_default: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(
            status_code=status_code or self.status_code_default,
            detail=message,
            headers=headers,
        )
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        return {"success": False, "error": self.code, "message": self.message, **self.details}


class ValidationError(AppError):
    status_code_default = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class UnauthorizedError(AppError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, headers={"WWW-Authenticate": "Bearer"})


class ForbiddenError(AppError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code_default = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ConflictError(AppError):
    status_code_default = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class PaymentError(AppError):
    status_code_default = status.HTTP_402_PAYMENT_REQUIRED
    code = "PAYMENT_ERROR"


class LimitExceededError(AppError):
    status_code_default = status.HTTP_403_FORBIDDEN
    code = "LIMIT_EXCEEDED"

    def __init__(self, message: str, *, current_usage: int, limit: int, upgrade: bool = False) -> None:
        self.current_usage = current_usage
        self.limit = limit
        self.remaining = 0
        self.upgrade = upgrade
        super().__init__(
            message,
            details={
                "limitExceeded": True,
                "currentUsage": current_usage,
                "limit": limit,
                "remaining": 0,
                "upgrade": upgrade,
            },
        )


class ExternalServiceError(AppError):
    status_code_default = status.HTTP_502_BAD_GATEWAY
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, message: str, service: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        self.service = service
        super().__init__(message, details={"service": service}, status_code=status_code)


class InvalidWebhookSignatureError(ExternalServiceError):
    """Signature over the raw webhook body did not verify; the endpoint answers 400."""

    code = "INVALID_SIGNATURE"

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message, service="stripe", status_code=status.HTTP_400_BAD_REQUEST)


class RateLimitError(AppError):
    status_code_default = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str = "Too many requests, please try again later", *, upgrade: bool = False) -> None:
        super().__init__(message, details={"upgrade": upgrade})


# ========================================
# 🧯 Exception handler registration
# ========================================
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("❌ %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
