"""
Error taxonomy for the settlement services and the JSON error envelope
every service returns.

BusinessLogicError covers conditions the caller caused or can fix (4xx).
ServiceError covers our own infrastructure failing (5xx); anything raised as
a ServiceError from the webhook path makes the payment provider redeliver.
"""
from typing import Optional, Dict, Any, Tuple
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None

class ErrorCodes:
    # Authentication
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    # Input
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_FEE_PERCENT = "INVALID_FEE_PERCENT"
    MALFORMED_EVENT = "MALFORMED_EVENT"

    # Ledger rules
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    WALLET_NOT_CONFIGURED = "WALLET_NOT_CONFIGURED"
    IDENTITY_NOT_VERIFIED = "IDENTITY_NOT_VERIFIED"

    # Lookups
    NOT_FOUND = "NOT_FOUND"
    CONTENT_NOT_FOUND = "CONTENT_NOT_FOUND"
    SELLER_NOT_FOUND = "SELLER_NOT_FOUND"
    PURCHASE_NOT_FOUND = "PURCHASE_NOT_FOUND"

    # System
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"
    NOTIFICATION_DELIVERY_FAILED = "NOTIFICATION_DELIVERY_FAILED"

# Conditions the caller is expected to display rather than page on
USER_FACING_CODES = {
    ErrorCodes.INSUFFICIENT_FUNDS,
    ErrorCodes.WALLET_NOT_CONFIGURED,
    ErrorCodes.IDENTITY_NOT_VERIFIED,
    ErrorCodes.INVALID_AMOUNT,
    ErrorCodes.PURCHASE_NOT_FOUND,
}

NOT_FOUND_CODES = {
    ErrorCodes.CONTENT_NOT_FOUND,
    ErrorCodes.SELLER_NOT_FOUND,
    ErrorCodes.PURCHASE_NOT_FOUND,
}

class BusinessLogicError(Exception):
    code = ErrorCodes.INVALID_INPUT

    def __init__(self, message: str, code: str = None, field: str = None, context: Dict[str, Any] = None):
        self.code = code or self.code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    code = ErrorCodes.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: str = None, original_error: Exception = None):
        self.code = code or self.code
        self.message = message
        self.original_error = original_error
        super().__init__(message)


class InvalidSignature(BusinessLogicError):
    """Webhook authenticity check failed. Terminal, never applied."""
    code = ErrorCodes.INVALID_SIGNATURE

class MalformedEvent(BusinessLogicError):
    """Required settlement fields are missing or unparseable."""
    code = ErrorCodes.MALFORMED_EVENT

class InvalidFeePercent(BusinessLogicError):
    code = ErrorCodes.INVALID_FEE_PERCENT

class InvalidAmount(BusinessLogicError):
    code = ErrorCodes.INVALID_AMOUNT

class InsufficientFunds(BusinessLogicError):
    code = ErrorCodes.INSUFFICIENT_FUNDS

class WalletNotConfigured(BusinessLogicError):
    code = ErrorCodes.WALLET_NOT_CONFIGURED

class IdentityNotVerified(BusinessLogicError):
    code = ErrorCodes.IDENTITY_NOT_VERIFIED

class ContentNotFound(BusinessLogicError):
    code = ErrorCodes.CONTENT_NOT_FOUND

class SellerNotFound(BusinessLogicError):
    code = ErrorCodes.SELLER_NOT_FOUND

class PurchaseNotFound(BusinessLogicError):
    code = ErrorCodes.PURCHASE_NOT_FOUND

class StorageUnavailable(ServiceError):
    """Transient persistence failure during a ledger write. Retryable."""
    code = ErrorCodes.DATABASE_ERROR

class NotificationDeliveryFailed(ServiceError):
    """Raised by mailers; always caught inside the notification fan-out."""
    code = ErrorCodes.NOTIFICATION_DELIVERY_FAILED


def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=trace_id,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())

def _trace_id(request: Request) -> Optional[str]:
    return getattr(request.state, "trace_id", None)

def _log_business_error(exc: BusinessLogicError, extra: Dict[str, Any]) -> None:
    if exc.code in USER_FACING_CODES:
        logger.info(f"Request declined: {exc.code} - {exc.message}", extra=extra)
    elif exc.code == ErrorCodes.INVALID_SIGNATURE:
        logger.warning(f"Security: rejected request with {exc.code} - {exc.message}", extra=extra)
    else:
        logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra=extra)

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    trace_id = _trace_id(request)
    _log_business_error(exc, {
        "error_code": exc.code,
        "trace_id": trace_id,
        "path": request.url.path,
        "field": exc.field,
        "context": exc.context,
    })
    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=404 if exc.code in NOT_FOUND_CODES else 400,
        field=exc.field,
        context=exc.context,
        trace_id=trace_id,
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    status_code_map = {
        ErrorCodes.SERVICE_UNAVAILABLE: 503,
        ErrorCodes.DATABASE_ERROR: 503,
    }
    trace_id = _trace_id(request)
    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "path": request.url.path,
        "original_error": str(exc.original_error) if exc.original_error else None,
    })
    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code_map.get(exc.code, 500),
        trace_id=trace_id,
    )

def _first_validation_error(exc: RequestValidationError) -> Tuple[str, str]:
    first = exc.errors()[0]
    field = ".".join(str(loc) for loc in first.get("loc", []))
    return field, first.get("msg", "Validation error")

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    field, message = _first_validation_error(exc)
    logger.info(f"Validation error: {message} on field {field}", extra={"trace_id": _trace_id(request)})
    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        trace_id=_trace_id(request),
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        403: ErrorCodes.FORBIDDEN,
        404: ErrorCodes.NOT_FOUND,
        503: ErrorCodes.SERVICE_UNAVAILABLE,
    }
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={"trace_id": _trace_id(request)})
    return create_error_response(
        error_code=status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR),
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=_trace_id(request),
    )

async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {exc}", extra={
        "trace_id": _trace_id(request),
        "path": request.url.path,
        "traceback": traceback.format_exc(),
    })
    # internals stay in the log
    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=_trace_id(request),
    )

def add_error_handlers(app):
    """Register the envelope for every exception family on a service app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
