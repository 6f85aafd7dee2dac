"""Unified error codes and custom exceptions.

Error code ranges:
  1xxx: Auth
  2xxx: Points ledger
  9xxx: System

Every ledger error aborts the whole unit of work; the API layer renders
them through a single AppError handler.
"""


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


# --- 1xxx: Auth ---

class InvalidCredentialsError(AppError):
    def __init__(self) -> None:
        super().__init__(1001, "Invalid or expired token", 401)


class PermissionDeniedError(AppError):
    def __init__(self, detail: str = "Admin role required") -> None:
        super().__init__(1002, detail, 403)


# --- 2xxx: Points ledger ---

class AccountNotFoundError(AppError):
    def __init__(self, user_id: str) -> None:
        super().__init__(2001, f"Points account not found for user {user_id}", 404)


class AccountInactiveError(AppError):
    def __init__(self, user_id: str) -> None:
        super().__init__(2002, f"Points account is inactive for user {user_id}", 422)


class InvalidAmountError(AppError):
    def __init__(self, amount: int, expected: str = "greater than 0") -> None:
        super().__init__(2003, f"Invalid amount {amount}: must be {expected}", 422)


class InsufficientBalanceError(AppError):
    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            2004,
            f"Insufficient points: required {required}, available {available}",
            422,
        )


class InvalidAdjustmentError(AppError):
    def __init__(self, amount: int, balance: int) -> None:
        super().__init__(
            2005,
            f"Adjustment of {amount} would leave a negative balance (current {balance})",
            422,
        )


class TransactionNotFoundError(AppError):
    def __init__(self, transaction_id: int) -> None:
        super().__init__(2006, f"Point transaction not found: {transaction_id}", 404)


class IdempotencyConflictError(AppError):
    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            2007,
            f"Idempotency key already used for a different operation: {idempotency_key}",
            409,
        )


class InvalidExpiryDaysError(AppError):
    def __init__(self, days: int) -> None:
        super().__init__(2008, f"Expiry days must be between 1 and 3650, got {days}", 422)


# --- 9xxx: System ---

class InternalError(AppError):
    def __init__(self, detail: str = "Internal server error") -> None:
        super().__init__(9002, detail, 500)


class StorageFailureError(AppError):
    """Persistence failed; the unit of work was rolled back and may be retried."""

    def __init__(self, operation: str) -> None:
        super().__init__(9003, f"Storage failure during {operation}", 503)
