"""Error taxonomy for the escrow core and its FastAPI exception handlers.

Every failure a caller can act on is an ``AppError`` with a stable ``code``
and an HTTP status reflecting its category. Handlers render the same
``{"error": {...}}`` envelope the rate limiter uses.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


logger = logging.getLogger("marketplace.errors")


class AppError(Exception):
    code = "app_error"
    status_code = 400
    message = "Request failed"

    def __init__(self, message: Optional[str] = None, *, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.message
        self.details = details or {}
        super().__init__(self.message)


# validation

class ValidationFailed(AppError):
    code = "validation_failed"
    status_code = 400
    message = "Invalid request"


class SelfOfferForbidden(ValidationFailed):
    code = "self_offer_forbidden"
    message = "Cannot make an offer on your own listing"


class BelowMinimumWithdrawal(ValidationFailed):
    code = "below_minimum_withdrawal"
    message = "Amount is below the minimum withdrawal"


# authorization

class NotAuthorized(AppError):
    code = "not_authorized"
    status_code = 403
    message = "Not authorized"


# lookup

class NotFound(AppError):
    code = "not_found"
    status_code = 404
    message = "Not found"


class ListingNotFound(NotFound):
    code = "listing_not_found"
    message = "Listing not found"


class OfferNotFound(NotFound):
    code = "offer_not_found"
    message = "Offer not found"


class TransactionNotFound(NotFound):
    code = "transaction_not_found"
    message = "Transaction not found"


# state guards

class StateConflict(AppError):
    code = "invalid_state"
    status_code = 400
    message = "Resource is not in a valid state for this action"


class InvalidTransition(StateConflict):
    code = "invalid_transition"

    def __init__(self, machine: str, current: str, target: str):
        super().__init__(
            f"Invalid {machine} transition from {current} to {target}",
            details={"machine": machine, "current": current, "target": target},
        )


class ListingUnavailable(StateConflict):
    code = "listing_unavailable"
    message = "Listing is no longer available"


class DuplicateOffer(StateConflict):
    code = "duplicate_offer"
    status_code = 409
    message = "You already have an active offer on this listing"


class OfferNotPending(StateConflict):
    code = "offer_not_pending"
    message = "Offer is no longer pending"


class PaymentAlreadyInitiated(StateConflict):
    code = "payment_already_initiated"
    message = "Payment already initiated"


class NotHeld(StateConflict):
    code = "transaction_not_held"
    message = "Transaction not in escrow"


class DisputeNotAllowed(StateConflict):
    code = "dispute_not_allowed"
    message = "Can only dispute transactions in escrow without an open dispute"


class NoActiveDispute(StateConflict):
    code = "no_active_dispute"
    message = "No active dispute"


class DisputeAlreadyResolved(StateConflict):
    code = "dispute_already_resolved"
    message = "Dispute already resolved"


class InsufficientBalance(StateConflict):
    code = "insufficient_balance"
    message = "Insufficient wallet balance"


# external dependency

class PaymentGatewayError(AppError):
    code = "payment_gateway_error"
    status_code = 502
    retryable = False


class PaymentGatewayUnavailable(PaymentGatewayError):
    code = "payment_gateway_unavailable"
    status_code = 503
    message = "Payment provider unavailable, try again later"
    retryable = True


class PaymentGatewayRejected(PaymentGatewayError):
    code = "payment_gateway_rejected"
    status_code = 502
    message = "Payment provider rejected the request"


class InvalidWebhookSignature(AppError):
    code = "invalid_signature"
    status_code = 400
    message = "Invalid HMAC"


# integrity

class IntegrityViolation(AppError):
    code = "integrity_violation"
    status_code = 500
    message = "Internal consistency error"


def _envelope(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"error": {"code": code, "message": message, "details": details or {}}}


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if isinstance(exc, IntegrityViolation):
        logger.error("integrity violation on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=_envelope(exc.code, exc.message, exc.details))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    code = {401: "unauthenticated", 403: "not_authorized", 404: "not_found"}.get(exc.status_code, "http_error")
    return JSONResponse(
        status_code=exc.status_code,
        content=_envelope(code, detail),
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=_envelope(ValidationFailed.code, ValidationFailed.message, {"errors": errors}),
    )
