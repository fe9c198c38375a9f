# custody/core/errors.py
"""
Custody error hierarchy.

Every error is a rejection of the current call. The record is never left
partially updated.
"""


class CustodyError(Exception):
    """Base exception for all custody rejections"""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class InvalidStateError(CustodyError):
    """Raised when the chain is not in the state the operation requires"""
    pass


class AuthorizationError(CustodyError):
    """Raised when the caller is not the current owner"""
    pass


class IdentityMismatchError(CustodyError):
    """Raised when the supplied chain ID does not match the record"""
    pass


class TimestampRegressionError(CustodyError):
    """Raised when a timestamp goes backwards and monotonic time is required"""
    pass
