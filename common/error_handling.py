"""
Standardized error responses for the purchase service
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
import logging
import traceback
import time

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    """Detailed error information"""
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    """Standard error response format"""
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    """Standard error codes"""
    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"

    # Validation (rejected synchronously, never persisted)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    BELOW_MINIMUM_PURCHASE = "BELOW_MINIMUM_PURCHASE"
    ABOVE_MAXIMUM_PURCHASE = "ABOVE_MAXIMUM_PURCHASE"
    UNSUPPORTED_CURRENCY = "UNSUPPORTED_CURRENCY"
    PRICE_UNAVAILABLE = "PRICE_UNAVAILABLE"

    # Orders
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_EXPIRED = "ORDER_EXPIRED"
    ORDER_NOT_ACTIONABLE = "ORDER_NOT_ACTIONABLE"
    PROOF_ALREADY_CONSUMED = "PROOF_ALREADY_CONSUMED"
    INVALID_PROOF = "INVALID_PROOF"
    CREDIT_RECORD_NOT_FOUND = "CREDIT_RECORD_NOT_FOUND"

    # Ledger
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    SWAP_LIMIT_EXCEEDED = "SWAP_LIMIT_EXCEEDED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # System Errors
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    # External Service Errors
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"

class BusinessLogicError(Exception):
    """Custom exception for business logic errors"""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class ServiceError(Exception):
    """Custom exception for service-level errors"""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

def create_error_response(
    error_code: str,
    message: str,
    status_code: int = 500,
    field: str = None,
    context: Dict[str, Any] = None,
    trace_id: str = None,
    request_id: str = None
) -> JSONResponse:
    """Create standardized error response"""

    error_detail = ErrorDetail(
        code=error_code,
        message=message,
        field=field,
        context=context
    )

    error_response = StandardErrorResponse(
        error=error_detail,
        timestamp=time.time(),
        trace_id=trace_id,
        request_id=request_id
    )

    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(error_response.model_dump())
    )

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    """Handle business logic exceptions"""

    status_code_map = {
        ErrorCodes.VALIDATION_ERROR: 400,
        ErrorCodes.BELOW_MINIMUM_PURCHASE: 400,
        ErrorCodes.ABOVE_MAXIMUM_PURCHASE: 400,
        ErrorCodes.UNSUPPORTED_CURRENCY: 400,
        ErrorCodes.INVALID_PROOF: 400,
        ErrorCodes.INSUFFICIENT_FUNDS: 400,
        ErrorCodes.UNAUTHORIZED: 401,
        ErrorCodes.ORDER_NOT_FOUND: 404,
        ErrorCodes.ACCOUNT_NOT_FOUND: 404,
        ErrorCodes.CREDIT_RECORD_NOT_FOUND: 404,
        ErrorCodes.ORDER_NOT_ACTIONABLE: 409,
        ErrorCodes.PROOF_ALREADY_CONSUMED: 409,
        ErrorCodes.ORDER_EXPIRED: 410,
        ErrorCodes.PRICE_UNAVAILABLE: 422,
        ErrorCodes.SWAP_LIMIT_EXCEEDED: 429,
        ErrorCodes.RATE_LIMIT_EXCEEDED: 429,
    }

    status_code = status_code_map.get(exc.code, 400)

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.warning(f"Business logic error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "request_id": request_id,
        "field": exc.field,
        "context": exc.context
    })

    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        field=exc.field,
        context=exc.context,
        trace_id=trace_id,
        request_id=request_id
    )

async def service_exception_handler(request: Request, exc: ServiceError):
    """Handle service-level exceptions"""

    status_code_map = {
        ErrorCodes.SERVICE_UNAVAILABLE: 503,
        ErrorCodes.EXTERNAL_SERVICE_ERROR: 502,
        ErrorCodes.TIMEOUT_ERROR: 504,
    }

    status_code = status_code_map.get(exc.code, 500)

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Service error: {exc.code} - {exc.message}", extra={
        "error_code": exc.code,
        "trace_id": trace_id,
        "request_id": request_id,
        "original_error": str(exc.original_error) if exc.original_error else None
    })

    # Transport details stay in the log, never in the response
    return create_error_response(
        error_code=exc.code,
        message=exc.message,
        status_code=status_code,
        trace_id=trace_id,
        request_id=request_id
    )

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")

    logger.warning(f"Validation error: {message} on field {field}", extra={
        "trace_id": trace_id,
        "request_id": request_id,
    })

    return create_error_response(
        error_code=ErrorCodes.VALIDATION_ERROR,
        message=f"Validation error on field '{field}': {message}",
        status_code=400,
        field=field,
        context={"validation_errors": jsonable_encoder(exc.errors())},
        trace_id=trace_id,
        request_id=request_id
    )

async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle FastAPI HTTP exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    status_to_code = {
        401: ErrorCodes.UNAUTHORIZED,
        404: ErrorCodes.ORDER_NOT_FOUND,
        429: ErrorCodes.RATE_LIMIT_EXCEEDED,
        500: ErrorCodes.INTERNAL_SERVER_ERROR,
        503: ErrorCodes.SERVICE_UNAVAILABLE,
    }

    error_code = status_to_code.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)

    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}", extra={
        "status_code": exc.status_code,
        "trace_id": trace_id,
        "request_id": request_id
    })

    return create_error_response(
        error_code=error_code,
        message=str(exc.detail),
        status_code=exc.status_code,
        trace_id=trace_id,
        request_id=request_id
    )

async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""

    trace_id = getattr(request.state, 'trace_id', None)
    request_id = getattr(request.state, 'request_id', None)

    logger.error(f"Unexpected error: {str(exc)}", extra={
        "trace_id": trace_id,
        "request_id": request_id,
        "traceback": traceback.format_exc()
    })

    return create_error_response(
        error_code=ErrorCodes.INTERNAL_SERVER_ERROR,
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
        trace_id=trace_id,
        request_id=request_id
    )

def add_error_handlers(app):
    """Add all error handlers to FastAPI app"""
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
