"""
Ledger Error Hierarchy

Validation, conflict, integrity and external-dependency failures raised by the
installment ledger. Callers use the class to decide between rejecting,
treating as a no-op, or retrying.
"""


class LedgerError(Exception):
    """Base exception for all ledger errors."""


# Validation errors: rejected before any state mutation, never retried

class ValidationError(LedgerError, ValueError):
    """Raised when caller-supplied input is out of range or incomplete."""


class InvalidScheduleParameters(ValidationError):
    """Raised when a loan's amount or day count cannot produce a schedule."""


class InvalidApplicationError(ValidationError):
    """Raised when a loan application is missing fields or out of range."""


# Lookups

class NotFoundError(LedgerError):
    """Raised when a referenced entity does not exist."""


class LoanNotFoundError(NotFoundError):
    """Raised when a loan id does not resolve."""


class InstallmentNotFoundError(NotFoundError):
    """Raised when an installment id does not resolve."""


class AccessDeniedError(LedgerError):
    """Raised when a borrower acts on a loan or installment they do not own."""


# Conflict errors: no-op for retryable callers, rejection for direct actions

class ConflictError(LedgerError):
    """Raised when the target is not in the state the transition requires."""


class InstallmentAlreadyPaidError(ConflictError):
    """Raised when settlement targets an installment that is already paid."""

    def __init__(self, installment_ids):
        self.installment_ids = list(installment_ids)
        super().__init__(
            f"Installment(s) already paid: {', '.join(self.installment_ids)}"
        )


class InvalidLoanStateError(ConflictError):
    """Raised when a loan is not in the expected status for a transition."""


class AutopayStateError(ConflictError):
    """Raised when an autopay transition is not allowed from the current state."""


# Integrity errors: fatal to the operation, repair path required

class IntegrityError(LedgerError):
    """Raised when persisted ledger state is inconsistent."""


class LoanAggregateMissingError(IntegrityError):
    """Raised when an installment references a loan that no longer exists."""


class AggregateDriftError(IntegrityError):
    """Raised when loan totals disagree with the summed installments."""

    def __init__(self, loan_id: str, drifted_fields):
        self.loan_id = loan_id
        self.drifted_fields = dict(drifted_fields)
        fields = ", ".join(sorted(self.drifted_fields))
        super().__init__(f"Loan {loan_id} aggregates drifted: {fields}")


# External-dependency errors

class SignatureVerificationError(LedgerError):
    """Raised when a gateway signature does not match the recomputed HMAC."""


class ConfigurationError(LedgerError):
    """Raised when required configuration is missing or invalid."""


class NotificationDeliveryError(LedgerError):
    """Raised by broadcasters when delivery fails; never reaches ledger callers."""
