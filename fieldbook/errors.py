"""
Booking domain errors

Every error here is recoverable by the caller and maps to a 4xx response.
Token errors share one public message so a link holder cannot tell a token
that never existed from one that was already used.
"""

from typing import Optional

TOKEN_PUBLIC_MESSAGE = "Invalid or expired link"


class BookingError(ValueError):
    """Base class for business rule violations"""

    code = "booking_error"
    status_code = 400
    public_message: Optional[str] = None

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_public_dict(self) -> dict:
        return {"error": self.code, "detail": self.public_message or self.message}


class InvalidSlot(BookingError):
    code = "invalid_slot"
    status_code = 422


class OutOfHorizon(BookingError):
    code = "out_of_horizon"
    status_code = 422


class MissingReasonDetail(BookingError):
    code = "missing_reason_detail"
    status_code = 422


class TermsNotAccepted(BookingError):
    code = "terms_not_accepted"
    status_code = 422


class MissingQuoteMessage(BookingError):
    code = "missing_quote_message"
    status_code = 422


class IllegalTransition(BookingError):
    code = "illegal_transition"
    status_code = 409

    def __init__(self, current: str, target: str, message: str = ""):
        super().__init__(message or f"Cannot move from {current} to {target}")
        self.current = current
        self.target = target


class TokenError(BookingError):
    code = "token_invalid"
    status_code = 403
    public_message = TOKEN_PUBLIC_MESSAGE


class TokenInvalid(TokenError):
    code = "token_invalid"


class TokenExpired(TokenError):
    code = "token_expired"


class TokenTargetMismatch(TokenError):
    code = "token_target_mismatch"


class CancellationWindowClosed(BookingError):
    code = "cancellation_window_closed"
    status_code = 409


class IncompleteQuoteDocument(BookingError):
    code = "incomplete_quote_document"
    status_code = 422


class ConcurrentModification(BookingError):
    code = "concurrent_modification"
    status_code = 409


class NotFound(BookingError):
    code = "not_found"
    status_code = 404


class QueueUnavailable(BookingError):
    """Raised inside the queue monitor, reported to callers as a structured error"""

    code = "queue_unavailable"
    status_code = 503

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def details(self) -> str:
        if self.cause is None:
            return self.message
        return str(self.cause) or type(self.cause).__name__
