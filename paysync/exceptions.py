"""
Exception Classes - Strongly typed exception hierarchy.

Exceptions are reserved for caller errors, authorization failures and
infrastructure failures. Expected business outcomes (insufficient funds,
payment not yet paid, already contacted) are typed result values instead.
"""


class PaymentCoreError(Exception):
    """Base exception for all payment core errors."""

    pass


class InvalidArgumentError(PaymentCoreError):
    """Raised when a caller passes a missing, malformed or out-of-range argument."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"Invalid argument '{field}': {message}")


class AuthenticationError(PaymentCoreError):
    """Raised when the caller cannot be authenticated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(PaymentCoreError):
    """Raised when the caller acts on records it does not own without privilege."""

    def __init__(self, user_id: str, resource: str) -> None:
        self.user_id = user_id
        self.resource = resource
        super().__init__(f"User {user_id} is not allowed to access {resource}")


class IdempotencyConflictError(PaymentCoreError):
    """Raised when an idempotency key is reused for a different operation."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"Idempotency conflict for key {key}: {reason}")


class DuplicateRecordError(PaymentCoreError):
    """Raised by the ledger store when a unique constraint rejects an insert."""

    def __init__(self, table: str, key: str) -> None:
        self.table = table
        self.key = key
        super().__init__(f"Duplicate record in {table}: {key}")


class DatabaseError(PaymentCoreError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class PaymentProviderError(PaymentCoreError):
    """Raised when payment provider operation fails or times out."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(PaymentCoreError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")
