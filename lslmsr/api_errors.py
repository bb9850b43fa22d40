"""
API error handling. Structured JSON errors with codes.

Every error response: {"error": {"code": "...", "message": "...", "details": {...}}}
"""

from fastapi import Request
from fastapi.responses import JSONResponse

from lslmsr.fixed_point import (
    FixedPointError, Overflow, Underflow, DivideByZero, DomainError,
)
from lslmsr.ledgers import InsufficientBalance, LedgerError
from lslmsr.market_engine import (
    MarketError, MarketNotFound, AlreadyInitialized, NotInitialized,
    InvalidOverround, InsufficientFunding, InvalidOutcome, InvalidAmount,
    MarketResolved, AlreadyResolved, InvalidPayoutLength, NotResolved,
    PaymentFailed, Unauthorized,
)


# Everything the engine may raise at an API caller
ENGINE_ERRORS = (MarketError, LedgerError, InsufficientBalance,
                 FixedPointError, ValueError)


class APIError(Exception):
    """Structured API error with HTTP status and machine-readable code."""

    def __init__(self, status: int, code: str, message: str,
                 details: dict | None = None):
        self.status = status
        self.code = code
        self.message = message
        self.details = details or {}

    def response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.status,
            content={"error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }},
        )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return exc.response()


# Most specific first
_ERROR_CODES: list[tuple[type, int, str]] = [
    (MarketNotFound, 404, "market_not_found"),
    (Unauthorized, 403, "unauthorized"),
    (AlreadyInitialized, 409, "already_initialized"),
    (NotInitialized, 409, "not_initialized"),
    (MarketResolved, 409, "market_resolved"),
    (AlreadyResolved, 409, "already_resolved"),
    (NotResolved, 409, "not_resolved"),
    (InvalidOverround, 400, "invalid_overround"),
    (InsufficientFunding, 400, "insufficient_funding"),
    (InvalidOutcome, 400, "invalid_outcome"),
    (InvalidAmount, 400, "invalid_amount"),
    (InvalidPayoutLength, 400, "invalid_payout_length"),
    (PaymentFailed, 402, "payment_failed"),
    (InsufficientBalance, 400, "insufficient_balance"),
    (LedgerError, 400, "ledger_error"),
    (Overflow, 400, "overflow"),
    (Underflow, 400, "underflow"),
    (DivideByZero, 400, "divide_by_zero"),
    (DomainError, 400, "domain_error"),
]


def translate_engine_error(exc: Exception) -> APIError:
    """Translate engine exceptions to structured API errors."""
    msg = str(exc)
    for exc_type, status, code in _ERROR_CODES:
        if isinstance(exc, exc_type):
            return APIError(status, code, msg)
    return APIError(400, "bad_request", msg)
