# coursepay/error_handlers.py
"""
Centralized error handling with custom exception classes,
error codes, and FastAPI exception handlers.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from slowapi.errors import RateLimitExceeded
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import traceback

from .logging_config import get_logger
from .config import settings

logger = get_logger(__name__)


# ============================================================================
# ERROR CODES - For client-side error handling
# ============================================================================

class ErrorCode:
    """Centralized error codes for consistent client-side handling"""

    # General errors (1xxx)
    INTERNAL_SERVER_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1003"
    FORBIDDEN = "ERR_1004"
    RATE_LIMIT_EXCEEDED = "ERR_1005"

    # Database errors (2xxx)
    DATABASE_ERROR = "ERR_2000"
    INTEGRITY_ERROR = "ERR_2001"

    # External service errors (4xxx)
    CLERK_ERROR = "ERR_4003"
    PAYMENT_GATEWAY_ERROR = "ERR_4004"

    # Payment & enrollment errors (5xxx)
    INVALID_SIGNATURE = "ERR_5000"
    AMOUNT_MISMATCH = "ERR_5002"
    COUPON_EXHAUSTED = "ERR_5003"
    ALREADY_ENROLLED = "ERR_5004"
    COURSE_UNAVAILABLE = "ERR_5005"
    INVALID_COUPON = "ERR_5006"
    INVALID_STATE_TRANSITION = "ERR_5007"
    REFUND_REJECTED = "ERR_5008"
    ELIGIBILITY_WINDOW_EXCEEDED = "ERR_5009"
    ORDER_NOT_REFUNDABLE = "ERR_5010"
    REFUND_ALREADY_REQUESTED = "ERR_5011"
    COUPON_CODE_TAKEN = "ERR_5012"


# ============================================================================
# CUSTOM EXCEPTIONS
# ============================================================================

class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class NotFoundException(AppException):
    """Raised when a resource is not found"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=ErrorCode.NOT_FOUND,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "identifier": str(identifier)}
        )


class OrderNotFound(NotFoundException):
    """No order matches the code or id (never created from a notification)"""

    def __init__(self, identifier: Any):
        super().__init__("Order", identifier)


class UnauthorizedException(AppException):
    """Raised when authentication fails"""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            error_code=ErrorCode.UNAUTHORIZED,
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class ForbiddenException(AppException):
    """Raised when user doesn't have permission"""

    def __init__(self, message: str = "Access denied"):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=status.HTTP_403_FORBIDDEN
        )


class ConcurrencyLimitExceeded(AppException):
    """Raised when a key already has too many requests in flight"""

    def __init__(self, key: str, limit: int):
        super().__init__(
            message="Too many simultaneous requests. Please wait for the previous one to finish.",
            error_code=ErrorCode.RATE_LIMIT_EXCEEDED,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"key": key, "limit": limit}
        )


class InvalidSignature(AppException):
    """Gateway notification failed signature or merchant verification"""

    def __init__(self, gateway: str, reason: str = "Signature mismatch"):
        super().__init__(
            message=f"Invalid {gateway} notification signature",
            error_code=ErrorCode.INVALID_SIGNATURE,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"gateway": gateway, "reason": reason}
        )


class CouponExhausted(AppException):
    """Coupon cap reached at commit time"""

    def __init__(self, code: str, message: str = "Coupon is no longer available"):
        super().__init__(
            message=message,
            error_code=ErrorCode.COUPON_EXHAUSTED,
            status_code=status.HTTP_409_CONFLICT,
            details={"coupon_code": code}
        )


class InvalidCoupon(AppException):
    """Coupon rejected at quote time (message is shown to the user)"""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_COUPON,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"coupon_code": code} if code else {}
        )


class CouponCodeTaken(AppException):
    def __init__(self, code: str):
        super().__init__(
            message=f"Coupon code already exists: {code}",
            error_code=ErrorCode.COUPON_CODE_TAKEN,
            status_code=status.HTTP_409_CONFLICT,
            details={"coupon_code": code}
        )


class AlreadyEnrolled(AppException):
    def __init__(self, course_id: int):
        super().__init__(
            message="You are already enrolled in this course",
            error_code=ErrorCode.ALREADY_ENROLLED,
            status_code=status.HTTP_409_CONFLICT,
            details={"course_id": course_id}
        )


class CourseUnavailable(AppException):
    def __init__(self, course_id: int, message: str = "Course is not available for purchase"):
        super().__init__(
            message=message,
            error_code=ErrorCode.COURSE_UNAVAILABLE,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"course_id": course_id}
        )


class InvalidStateTransition(AppException):
    """Requested state change is not allowed from the current state"""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            message=f"Cannot move {entity} from {current} to {target}",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=status.HTTP_409_CONFLICT,
            details={"entity": entity, "current": current, "target": target}
        )


class GatewayUnavailable(AppException):
    """Gateway could not be reached or answered with a 5xx (transient, retryable)"""

    def __init__(self, gateway: str, message: str):
        super().__init__(
            message=f"{gateway} error: {message}",
            error_code=ErrorCode.PAYMENT_GATEWAY_ERROR,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"service": gateway, "retryable": True}
        )


class GatewayTimeout(GatewayUnavailable):
    """
    Request reached the gateway but no reply came back in time.

    The gateway may have acted on it, so it is not retried automatically.
    """

    def __init__(self, gateway: str, message: str):
        super().__init__(gateway, message)
        self.status_code = status.HTTP_504_GATEWAY_TIMEOUT
        self.details = {"service": gateway, "retryable": False, "outcome_unknown": True}


class RefundRejected(AppException):
    """Gateway declined the refund (terminal, surfaced to the admin)"""

    def __init__(self, gateway: str, result_code: Any, message: str):
        super().__init__(
            message=f"{gateway} refund rejected: {message}",
            error_code=ErrorCode.REFUND_REJECTED,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"service": gateway, "result_code": str(result_code), "retryable": False}
        )


class EligibilityWindowExceeded(AppException):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.ELIGIBILITY_WINDOW_EXCEEDED,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class OrderNotRefundable(AppException):
    def __init__(self, order_code: str, payment_status: str):
        super().__init__(
            message="Refunds can only be requested for paid orders",
            error_code=ErrorCode.ORDER_NOT_REFUNDABLE,
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"order_code": order_code, "payment_status": payment_status}
        )


class RefundAlreadyRequested(AppException):
    def __init__(self, order_id: int):
        super().__init__(
            message="A refund request is already open for this order",
            error_code=ErrorCode.REFUND_ALREADY_REQUESTED,
            status_code=status.HTTP_409_CONFLICT,
            details={"order_id": order_id}
        )


# ============================================================================
# ERROR RESPONSE FORMATTER
# ============================================================================

def format_error_response(
    error_code: str,
    message: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Format error response in a consistent structure

    Returns:
        {
            "error": {
                "code": "ERR_5006",
                "message": "Coupon has expired",
                "details": {...},
                "request_id": "abc123",
                "timestamp": "2024-01-01T00:00:00Z"
            }
        }
    """
    response = {
        "error": {
            "code": error_code,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    }

    if details:
        response["error"]["details"] = details

    if request_id:
        response["error"]["request_id"] = request_id

    return response


# ============================================================================
# FASTAPI EXCEPTION HANDLERS
# ============================================================================

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom AppException errors"""

    request_id = getattr(request.state, "request_id", None)

    # 4xx are client-visible rejections, only 5xx deserve error level
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Application error: {exc.message}",
        extra={
            "request_id": request_id,
            "extra_data": {
                "error_code": exc.error_code,
                "status_code": exc.status_code,
                "path": str(request.url.path),
                "method": request.method,
                "details": exc.details
            }
        },
        exc_info=exc.status_code >= 500
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=format_error_response(
            error_code=exc.error_code,
            message=exc.message,
            status_code=exc.status_code,
            details=exc.details,
            request_id=request_id
        )
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Handler for Pydantic validation errors"""

    request_id = getattr(request.state, "request_id", None)

    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(x) for x in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    logger.warning(
        "Validation error",
        extra={
            "request_id": request_id,
            "extra_data": {
                "path": str(request.url.path),
                "method": request.method,
                "errors": errors
            }
        }
    )

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=format_error_response(
            error_code=ErrorCode.VALIDATION_ERROR,
            message="Request validation failed",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"validation_errors": errors},
            request_id=request_id
        )
    )


async def rate_limit_exception_handler(
    request: Request,
    exc: RateLimitExceeded
) -> JSONResponse:
    """Handler for slowapi rate limit violations"""

    request_id = getattr(request.state, "request_id", None)

    logger.warning(
        "Rate limit exceeded",
        extra={
            "request_id": request_id,
            "extra_data": {
                "path": request.url.path,
                "limit": str(exc.detail),
                "client_host": request.client.host if request.client else None,
            }
        }
    )

    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=format_error_response(
            error_code=ErrorCode.RATE_LIMIT_EXCEEDED,
            message="Too many requests. Please try again later.",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"limit": str(exc.detail)},
            request_id=request_id
        )
    )


async def sqlalchemy_exception_handler(
    request: Request,
    exc: SQLAlchemyError
) -> JSONResponse:
    """Handler for SQLAlchemy database errors"""

    request_id = getattr(request.state, "request_id", None)

    if isinstance(exc, IntegrityError):
        error_code = ErrorCode.INTEGRITY_ERROR
        message = "Database integrity constraint violated"
        status_code = status.HTTP_409_CONFLICT
    else:
        error_code = ErrorCode.DATABASE_ERROR
        message = "Database operation failed"
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    logger.error(
        f"Database error: {str(exc)}",
        extra={
            "request_id": request_id,
            "extra_data": {
                "error_type": type(exc).__name__,
                "path": str(request.url.path),
                "method": request.method
            }
        },
        exc_info=True
    )

    # Don't expose internal DB details in production
    if settings.ENVIRONMENT == "production":
        details = None
    else:
        details = {"database_error": str(exc)}

    return JSONResponse(
        status_code=status_code,
        content=format_error_response(
            error_code=error_code,
            message=message,
            status_code=status_code,
            details=details,
            request_id=request_id
        )
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Catch-all handler for unexpected errors"""

    request_id = getattr(request.state, "request_id", None)

    logger.critical(
        f"Unhandled exception: {str(exc)}",
        extra={
            "request_id": request_id,
            "extra_data": {
                "exception_type": type(exc).__name__,
                "path": str(request.url.path),
                "method": request.method,
            }
        },
        exc_info=True
    )

    if settings.ENVIRONMENT == "production":
        message = "An unexpected error occurred. Our team has been notified."
        details = None
    else:
        message = str(exc)
        details = {"traceback": traceback.format_exc().split("\n")}

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=format_error_response(
            error_code=ErrorCode.INTERNAL_SERVER_ERROR,
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
            request_id=request_id
        )
    )


def register_exception_handlers(app):
    """
    Register all exception handlers with FastAPI app

    Handlers are registered in order of specificity:
    1. Custom app exceptions (most specific)
    2. Validation and rate limit errors
    3. SQLAlchemy errors
    4. Generic exceptions (least specific)
    """
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
