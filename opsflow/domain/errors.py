"""Domain Errors: business rule violations and infrastructure failures.

Lost claim races are not errors; they come back as ClaimResult(won=False).
"""
from __future__ import annotations


class DomainError(Exception):
    """Base class for all domain-level errors."""
    status_code: int = 400
    retryable: bool = False

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


# ── Offer broadcast ──────────────────────────────────────

class NotAvailableError(DomainError):
    status_code = 409

    def __init__(self, request_id: str, reason: str = "request_not_available"):
        super().__init__(code="REQUEST_NOT_AVAILABLE", message=f"Request {request_id} is not available for an offer: {reason}")
        self.request_id = request_id
        self.reason = reason


class NoRecipientsError(DomainError):
    status_code = 422

    def __init__(self, request_id: str):
        super().__init__(code="NO_RECIPIENTS", message=f"No eligible recipients for request {request_id}")


class AlreadyBroadcastError(DomainError):
    status_code = 409

    def __init__(self, request_id: str, offer_id: str | None = None):
        super().__init__(code="ALREADY_BROADCAST", message=f"Request {request_id} already has an open offer")
        self.offer_id = offer_id


class InvalidTtlError(DomainError):
    status_code = 422

    def __init__(self, ttl_minutes: int, max_minutes: int):
        super().__init__(code="INVALID_TTL", message=f"ttl_minutes must be between 1 and {max_minutes}, got {ttl_minutes}")


class OfferNotFoundError(DomainError):
    status_code = 404

    def __init__(self, offer_id: str = ""):
        super().__init__(code="OFFER_NOT_FOUND", message=f"Offer not found: {offer_id}")


# ── Offer claim ──────────────────────────────────────────

class NotARecipientError(DomainError):
    status_code = 403

    def __init__(self, offer_id: str, user_id: str):
        super().__init__(code="NOT_A_RECIPIENT", message=f"User {user_id} is not an eligible recipient of offer {offer_id}")
        self.offer_id = offer_id
        self.user_id = user_id


class PartialClaimFailure(DomainError):
    """The offer CAS landed but the work-item assignment did not; the claim was rolled back."""
    status_code = 500
    retryable = True

    def __init__(self, offer_id: str, request_id: str, detail: str):
        super().__init__(
            code="PARTIAL_CLAIM_FAILURE",
            message=f"Claim of offer {offer_id} rolled back: assignment of request {request_id} failed ({detail})",
        )
        self.offer_id = offer_id
        self.request_id = request_id


# ── Infrastructure ───────────────────────────────────────

class PublishError(DomainError):
    status_code = 503
    retryable = True

    def __init__(self, event_type: str, detail: str):
        super().__init__(code="PUBLISH_FAILED", message=f"Could not persist event {event_type}: {detail}")
        self.event_type = event_type


class StoreUnavailableError(DomainError):
    status_code = 503
    retryable = True

    def __init__(self, operation: str, detail: str):
        super().__init__(code="STORE_UNAVAILABLE", message=f"{operation} failed: {detail}")
        self.operation = operation
