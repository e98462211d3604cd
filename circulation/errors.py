"""Caller-facing outcomes of the circulation engine.

Every error carries a stable ``code`` and a message the member can act on.
They subclass ``ValueError`` so controllers can keep catching the usual
validation failures in one place.
"""
from __future__ import annotations


class CirculationError(ValueError):
    code = "circulation_error"
    status_code = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"success": False, "code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


# -----------------------------
# Not found
# -----------------------------
class TitleNotFound(CirculationError):
    code = "title_not_found"
    status_code = 404
    default_message = "Title not found"


class LoanNotFound(CirculationError):
    code = "loan_not_found"
    status_code = 404
    default_message = "Loan not found"


class FineNotFound(CirculationError):
    code = "fine_not_found"
    status_code = 404
    default_message = "Fine not found"


class PaymentNotFound(CirculationError):
    code = "payment_not_found"
    status_code = 404
    default_message = "Payment not found"


# -----------------------------
# Inventory / ledger
# -----------------------------
class InsufficientCopies(CirculationError):
    code = "insufficient_copies"
    status_code = 409
    default_message = "Not enough copies available"


class InvalidTransition(CirculationError):
    code = "invalid_transition"
    status_code = 409
    default_message = "Operation not allowed in the current state"


class RenewalLimitExceeded(CirculationError):
    code = "renewal_limit_exceeded"
    status_code = 409
    default_message = "This loan has already been extended the maximum number of times"


class TooOverdueToExtend(CirculationError):
    code = "too_overdue_to_extend"
    status_code = 409
    default_message = "This loan is too far past its due date to be extended"


# -----------------------------
# Eligibility
# -----------------------------
class LimitExceeded(CirculationError):
    code = "limit_exceeded"
    status_code = 403
    default_message = "Borrowing limit reached"


class HasUnpaidFines(CirculationError):
    code = "has_unpaid_fines"
    status_code = 403
    default_message = "Outstanding fines must be paid before borrowing"


class HasOverdueBooks(CirculationError):
    code = "has_overdue_books"
    status_code = 403
    default_message = "Overdue books must be returned before borrowing"


# -----------------------------
# Payments
# -----------------------------
class AmountMismatch(CirculationError):
    code = "amount_mismatch"
    status_code = 409
    default_message = "Fine amounts have changed, please review the total and try again"


class GatewayTimeout(CirculationError):
    code = "gateway_timeout"
    status_code = 504
    default_message = "Payment gateway did not answer in time"


class GatewayDeclined(CirculationError):
    code = "gateway_declined"
    status_code = 402
    default_message = "Payment declined, please check your payment details"


ELIGIBILITY_ERRORS = {
    LimitExceeded.code: LimitExceeded,
    HasUnpaidFines.code: HasUnpaidFines,
    HasOverdueBooks.code: HasOverdueBooks,
}
