"""
Ledger error types.

Every failure a caller can act on is a LedgerError subclass with a stable
machine-readable ``code``. ``retryable`` marks errors whose outcome is unknown;
the caller retries with the same idempotency key.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""

    code = "ledger_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidAmount(LedgerError):
    """Amount is non-positive, malformed or outside an allowed range"""
    code = "invalid_amount"


class InvalidPercent(LedgerError):
    """Percentage outside [0, 100]"""
    code = "invalid_percent"


class InvalidMetadata(LedgerError):
    """Transaction metadata has unknown keys or non-scalar values"""
    code = "invalid_metadata"


class InsufficientFunds(LedgerError):
    """Available or frozen funds do not cover the requested amount"""
    code = "insufficient_funds"

    def __init__(self, message: str = "", required: Optional[Decimal] = None,
                 available: Optional[Decimal] = None):
        super().__init__(message)
        self.required = required
        self.available = available


class AlreadyFrozen(LedgerError):
    """An active escrow hold already exists for the order"""
    code = "already_frozen"


class InvalidState(LedgerError):
    """Operation not allowed from the current state"""
    code = "invalid_state"


class AlreadyConfirmed(LedgerError):
    """Transaction was confirmed earlier; nothing was applied again"""
    code = "already_confirmed"

    def __init__(self, message: str = "", transaction=None):
        super().__init__(message)
        self.transaction = transaction


class NotFound(LedgerError):
    """Referenced record does not exist or belongs to another user"""
    code = "not_found"


class TransientStoreFailure(LedgerError):
    """Lock timeout or connectivity failure; outcome unknown, safe to retry"""
    code = "transient_store_failure"
    retryable = True
