"""Application exceptions and the FastAPI handlers that render them.

Sweeps raise and catch these per contract; the HTTP layer turns any that
escape a request into the standard error envelope:

    {"error": {"code": "ERROR_CODE", "message": "...", "details": {...}}}
"""

import logging
from typing import Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class FarmBidException(Exception):
    """Base exception for FarmBid application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


class BusinessLogicError(FarmBidException):
    """Exception for business logic violations."""

    def __init__(self, message: str, error_code: str = "BUSINESS_LOGIC_ERROR"):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code=error_code,
        )


class ResourceNotFoundError(FarmBidException):
    """Exception for resources not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
        )


# ── Recurring payment taxonomy ──────────────────────────────


class NoPaymentMethod(BusinessLogicError):
    """Neither the contract nor the buyer has a usable payment method."""

    def __init__(self, contract_id: str):
        super().__init__(
            f"No payment method available for contract {contract_id}",
            error_code="NO_PAYMENT_METHOD",
        )


class ContractNotActive(BusinessLogicError):
    def __init__(self, contract_id: str, contract_status: str):
        super().__init__(
            f"Contract {contract_id} is not active (status: {contract_status})",
            error_code="CONTRACT_NOT_ACTIVE",
        )


class UnknownFrequencyError(BusinessLogicError):
    """A recurring contract carries a frequency outside the schedule table."""

    def __init__(self, frequency: str | None):
        super().__init__(
            f"Unknown recurrence frequency: {frequency!r}",
            error_code="UNKNOWN_FREQUENCY",
        )
        self.frequency = frequency


class PersistenceConflict(FarmBidException):
    """The row changed under us (optimistic version check failed)."""

    def __init__(self, entity: str, identifier: str):
        super().__init__(
            message=f"{entity} {identifier} was modified concurrently",
            status_code=status.HTTP_409_CONFLICT,
            error_code="PERSISTENCE_CONFLICT",
        )


class GatewayError(FarmBidException):
    """Base for payment gateway failures.  Terminal for the attempt."""

    def __init__(self, message: str, error_code: str = "GATEWAY_ERROR"):
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code=error_code,
        )


class GatewayDeclined(GatewayError):
    def __init__(self, message: str, payment_intent_id: str | None = None):
        super().__init__(message, error_code="GATEWAY_DECLINED")
        self.payment_intent_id = payment_intent_id


class GatewayTimeout(GatewayError):
    def __init__(self, message: str = "Payment gateway timed out"):
        super().__init__(message, error_code="GATEWAY_TIMEOUT")


# ── Handlers ────────────────────────────────────────────────


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
) -> JSONResponse:
    content = {
        "error": {
            "code": error_code,
            "message": message,
        }
    }

    if details:
        content["error"]["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content,
    )


async def farmbid_exception_handler(
    request: Request,
    exc: FarmBidException,
) -> JSONResponse:
    """Handle custom FarmBid exceptions."""
    logger.warning(
        "FarmBid exception: %s - %s",
        exc.error_code,
        exc.message,
        extra={"path": request.url.path, "method": request.method},
    )

    return create_error_response(
        status_code=exc.status_code,
        message=exc.message,
        error_code=exc.error_code,
    )


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    """Handle FastAPI HTTP exceptions."""
    if exc.status_code >= 500:
        logger.error(
            "HTTP %s: %s",
            exc.status_code,
            exc.detail,
            extra={"path": request.url.path, "method": request.method},
        )

    return create_error_response(
        status_code=exc.status_code,
        message=str(exc.detail),
        error_code=f"HTTP_{exc.status_code}",
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handle request validation errors."""
    errors = []
    for error in exc.errors():
        field = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })

    return create_error_response(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation error",
        error_code="VALIDATION_ERROR",
        details={"errors": errors},
    )


async def operational_exception_handler(
    request: Request,
    exc: OperationalError,
) -> JSONResponse:
    """Handle database operational errors (connection issues, etc.)."""
    logger.error("Database operational error on %s: %s", request.url.path, exc)

    return create_error_response(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        message="Database temporarily unavailable. Please try again.",
        error_code="DATABASE_UNAVAILABLE",
    )


def register_exception_handlers(app):
    """Register all custom exception handlers with FastAPI app."""
    app.add_exception_handler(FarmBidException, farmbid_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
