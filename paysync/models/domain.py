"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Provider metadata bags are parsed into closed records at the boundary.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any
from uuid import UUID

from paysync.models.api import (
    FailureReason,
    FeeStatus,
    IdempotencyStatus,
    OperationType,
    SubscriptionStatus,
    TransactionType,
)

# Metadata keys written by this service; legacy aliases are accepted on read.
USER_ID_KEYS = ("user_id", "userId", "firebaseUid")


def _first_present(raw: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return str(value)
    return None


@dataclass(frozen=True)
class CallerIdentity:
    """Verified caller identity taken from the bearer token."""

    user_id: str
    is_admin: bool = False

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("user_id cannot be empty")


# ============================================================================
# Idempotency
# ============================================================================


@dataclass(frozen=True)
class IdempotencyRecordData:
    """Snapshot of an idempotency ledger row."""

    key: str
    user_id: str
    operation: OperationType
    amount: int
    status: IdempotencyStatus
    result: dict[str, Any] | None
    external_payment_ref: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class IdempotencyCheck:
    """Outcome of ensure_idempotent."""

    is_duplicate: bool
    key: str
    status: IdempotencyStatus
    cached_result: dict[str, Any] | None = None
    external_payment_ref: str | None = None


# ============================================================================
# Balance Ledger
# ============================================================================


@dataclass(frozen=True)
class CreditTransactionData:
    """Immutable credit transaction row."""

    transaction_id: UUID
    user_id: str
    amount: int
    transaction_type: TransactionType
    description: str
    external_payment_ref: str | None
    balance_after: int
    created_at: datetime


@dataclass(frozen=True)
class CreditResult:
    """Outcome of a credit. applied=False means the external ref was already credited."""

    applied: bool
    new_balance: int
    transaction_id: UUID | None = None


@dataclass(frozen=True)
class DebitResult:
    """Outcome of a conditional debit."""

    success: bool
    new_balance: int | None
    reason: FailureReason | None = None
    transaction_id: UUID | None = None


# ============================================================================
# Subscriptions
# ============================================================================


@dataclass(frozen=True)
class SubscriptionFields:
    """Mutable subscription fields carried by a lifecycle event."""

    external_customer_id: str | None
    status: SubscriptionStatus
    plan_name: str | None
    plan_type: str | None
    user_type: str | None
    amount: int
    currency: str
    billing_period: str
    start_date: date | None
    end_date: date | None

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError(f"Subscription amount cannot be negative: {self.amount}")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")


@dataclass(frozen=True)
class SubscriptionData:
    """Authoritative subscription row."""

    external_subscription_id: str
    user_id: str
    external_customer_id: str | None
    status: SubscriptionStatus
    plan_name: str | None
    plan_type: str | None
    user_type: str | None
    amount: int
    currency: str
    billing_period: str
    start_date: date | None
    end_date: date | None
    updated_at: datetime


# ============================================================================
# Payments
# ============================================================================


@dataclass(frozen=True)
class PaymentRecordData:
    """Audit row for a provider payment."""

    user_id: str
    external_payment_ref: str
    amount: int
    currency: str
    status: str
    payment_method: str | None


@dataclass(frozen=True)
class PaymentIntentResult:
    """Credit purchase intent handed back to the client."""

    payment_intent_id: str
    client_secret: str
    status: str
    amount_minor: int
    currency: str
    credits: int
    idempotency_key: str
    is_duplicate: bool = False


@dataclass(frozen=True)
class ConfirmResult:
    """Outcome of confirm_payment / settlement."""

    success: bool
    new_balance: int | None = None
    credits_added: int = 0
    is_duplicate: bool = False
    reason: FailureReason | None = None


# ============================================================================
# Fees
# ============================================================================


@dataclass(frozen=True)
class ContactFeeResult:
    """Outcome of charging a contact fee."""

    success: bool
    credits_remaining: int
    already_contacted: bool = False
    reason: FailureReason | None = None


@dataclass(frozen=True)
class PlacementFeeData:
    """Placement fee row."""

    fee_id: UUID
    payer_id: str
    subject_id: str
    amount: int
    currency: str
    fee_status: FeeStatus
    notes: str | None
    released_at: datetime | None
    credited_at: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class PlacementFeeResult:
    """Outcome of a placement fee operation."""

    success: bool
    balance: int
    fee: PlacementFeeData | None = None
    already_exists: bool = False
    reason: FailureReason | None = None


# ============================================================================
# Provider metadata records
# ============================================================================


@dataclass(frozen=True)
class CustomerMetadata:
    """Metadata carried on a provider customer."""

    user_id: str | None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "CustomerMetadata":
        raw = raw or {}
        return cls(user_id=_first_present(raw, *USER_ID_KEYS))


@dataclass(frozen=True)
class CheckoutSessionMetadata:
    """Metadata carried on a checkout session."""

    user_id: str | None
    plan_name: str | None = None
    plan_tier: str | None = None
    user_type: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "CheckoutSessionMetadata":
        raw = raw or {}
        return cls(
            user_id=_first_present(raw, *USER_ID_KEYS),
            plan_name=_first_present(raw, "plan_name", "planName"),
            plan_tier=_first_present(raw, "plan_tier", "planTier"),
            user_type=_first_present(raw, "user_type", "userType"),
        )

    def to_mapping(self) -> dict[str, str]:
        """Render for the provider API, dropping empty fields."""
        values = {
            "user_id": self.user_id,
            "plan_name": self.plan_name,
            "plan_tier": self.plan_tier,
            "user_type": self.user_type,
        }
        return {k: v for k, v in values.items() if v is not None}


@dataclass(frozen=True)
class SubscriptionMetadata:
    """Metadata carried on a subscription (copied from the checkout session)."""

    user_id: str | None
    plan_name: str | None = None
    plan_tier: str | None = None
    user_type: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "SubscriptionMetadata":
        raw = raw or {}
        return cls(
            user_id=_first_present(raw, *USER_ID_KEYS),
            plan_name=_first_present(raw, "plan_name", "planName"),
            plan_tier=_first_present(raw, "plan_tier", "planTier"),
            user_type=_first_present(raw, "user_type", "userType"),
        )


@dataclass(frozen=True)
class PaymentMetadata:
    """Metadata carried on a payment intent."""

    user_id: str | None
    idempotency_key: str | None = None
    credits: int | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "PaymentMetadata":
        raw = raw or {}
        credits_raw = _first_present(raw, "credits")
        credits: int | None = None
        if credits_raw is not None:
            try:
                credits = int(credits_raw)
            except ValueError:
                credits = None
            if credits is not None and credits <= 0:
                credits = None
        return cls(
            user_id=_first_present(raw, *USER_ID_KEYS),
            idempotency_key=_first_present(raw, "idempotency_key", "idempotencyKey"),
            credits=credits,
        )

    def to_mapping(self) -> dict[str, str]:
        """Render for the provider API, dropping empty fields."""
        values = {
            "user_id": self.user_id,
            "idempotency_key": self.idempotency_key,
            "credits": str(self.credits) if self.credits is not None else None,
        }
        return {k: v for k, v in values.items() if v is not None}
