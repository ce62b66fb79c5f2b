"""
Error Taxonomy

Every failure the integrity subsystem raises derives from TraceLedgerError.
The HTTP adapter maps ValidationError to 400 and NotFoundError to 404.

An integrity mismatch is NOT an exception. It is reported on the
VerificationResult (is_valid=False) so callers can render it.
"""

from typing import Optional


class TraceLedgerError(Exception):
    """Base exception for the traceability ledger."""
    pass


class ValidationError(TraceLedgerError):
    """Raised when caller input is malformed or out of range."""
    pass


class CanonicalEncodingError(ValidationError):
    """Raised when event fields cannot be canonically encoded."""
    pass


class NotFoundError(TraceLedgerError):
    """Raised when a product, event or proof does not exist."""
    pass


class TransactionNotFoundError(NotFoundError):
    """Raised when the ledger does not know a transaction reference."""
    pass


class AnchorSubmissionError(TraceLedgerError):
    """
    Raised when the ledger rejects, fails, or times out on a submission.

    Recoverable: the event stays unverified and can be re-anchored later.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class LedgerUnavailableError(TraceLedgerError):
    """Raised when the ledger cannot be reached for a read (verify/lookup)."""
    pass


class ConfigurationError(TraceLedgerError):
    """Raised at startup when anchor or store configuration is invalid."""
    pass
