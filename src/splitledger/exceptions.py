"""Custom exceptions for SplitLedger."""


class SplitLedgerError(Exception):
    """Base exception for all SplitLedger errors."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


# ============================================================================
# Validation errors (rejected before any state mutation)
# ============================================================================


class LedgerValidationError(SplitLedgerError):
    """Base class for malformed or policy-violating input."""

    pass


class InvalidSplitError(LedgerValidationError):
    """Raised when an expense cannot be split as requested."""

    pass


class SameUserError(LedgerValidationError):
    """Raised when both sides of a pair or settlement are the same user."""

    def __init__(self, user_id: int, message: str | None = None):
        self.user_id = user_id
        super().__init__(
            message or f"Payer and payee cannot be the same user ({user_id})"
        )


class BelowMinimumError(LedgerValidationError):
    """Raised when an amount is below the configured minimum."""

    def __init__(self, amount, minimum, message: str | None = None):
        self.amount = amount
        self.minimum = minimum
        super().__init__(message or f"Amount {amount} must be at least {minimum}")


class TooFewUsersError(LedgerValidationError):
    """Raised when a group is too small to optimize."""

    def __init__(self, user_count: int, minimum: int = 3):
        self.user_count = user_count
        self.minimum = minimum
        super().__init__(
            f"Optimization needs at least {minimum} users, got {user_count}"
        )


class PermissionDeniedError(LedgerValidationError):
    """Raised when the caller is not part of the transaction."""

    pass


# ============================================================================
# State-conflict errors (caller must re-read state before retrying)
# ============================================================================


class StateConflictError(SplitLedgerError):
    """Base class for requests that contradict the ledger's current state."""

    pass


class NoDebtError(StateConflictError):
    """Raised when a settlement payer does not owe the payee anything."""

    def __init__(self, payer_id: int, payee_id: int):
        self.payer_id = payer_id
        self.payee_id = payee_id
        super().__init__(f"User {payer_id} does not owe money to User {payee_id}")


class ExceedsDebtError(StateConflictError):
    """Raised when a settlement is larger than the outstanding debt."""

    def __init__(self, amount, outstanding):
        self.amount = amount
        self.outstanding = outstanding
        super().__init__(
            f"Settlement amount (${amount}) cannot exceed "
            f"outstanding balance (${outstanding})"
        )


class InvalidStateError(StateConflictError):
    """Raised when a record is not in a state that allows the operation."""

    pass


class NotFoundError(SplitLedgerError):
    """Raised when a requested record does not exist."""

    pass


# ============================================================================
# Concurrency errors
# ============================================================================


class StaleRecordError(SplitLedgerError):
    """Raised by the store when an optimistic version check fails."""

    def __init__(self, balance_id: str):
        self.balance_id = balance_id
        super().__init__(f"Balance {balance_id} was modified concurrently")


class ConflictError(SplitLedgerError):
    """Raised when a write keeps conflicting after bounded retries."""

    def __init__(self, key: str, attempts: int):
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"Gave up updating {key} after {attempts} conflicting attempts"
        )


# ============================================================================
# Collaborator errors
# ============================================================================


class APIError(SplitLedgerError):
    """Base class for API-related errors."""

    pass


class DirectoryAPIError(APIError):
    """Raised when the user directory lookup fails."""

    pass
