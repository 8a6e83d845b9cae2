"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class OperationType(str, Enum):
    """Operations protected by the idempotency ledger."""

    PURCHASE_CREDITS = "purchase_credits"
    CHARGE_CONTACT_FEE = "charge_contact_fee"
    CONFIRM_PAYMENT = "confirm_payment"


class IdempotencyStatus(str, Enum):
    """Idempotency record lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionType(str, Enum):
    """Credit transaction type enumeration."""

    PURCHASE = "purchase"
    CHARGE = "charge"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states stored locally."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"
    EXPIRED = "expired"


class FeeStatus(str, Enum):
    """Placement fee escrow states."""

    ESCROW = "escrow"
    RELEASED = "released"
    CREDITED = "credited"


class FailureReason(str, Enum):
    """Expected business-rule failures, returned as values rather than raised."""

    INSUFFICIENT_FUNDS = "insufficient_funds"
    PAYMENT_NOT_COMPLETED = "payment_not_completed"
    ALREADY_CONTACTED = "already_contacted"
    FEE_NOT_FOUND = "fee_not_found"
    FEE_NOT_IN_ESCROW = "fee_not_in_escrow"


def _validate_currency(v: str) -> str:
    if not v.isalpha():
        raise ValueError("currency must be a 3-letter ISO code")
    return v.upper()


# ============================================================================
# Payment Models
# ============================================================================


class CreatePaymentIntentRequest(BaseModel):
    """POST /v1/payments/intents request body."""

    amount_minor: int = Field(..., gt=0, description="Amount to charge in minor units")
    currency: str = Field(..., min_length=3, max_length=3)
    credits: int | None = Field(
        None,
        gt=0,
        description="Credits granted on success; at most amount_minor // credit price",
    )
    idempotency_key: str | None = Field(None, min_length=1, max_length=255)
    customer_email: str | None = Field(None, min_length=1, max_length=255)
    user_id: str | None = Field(
        None, max_length=255, description="Target user (admin callers only)"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return _validate_currency(v)


class PaymentIntentResponse(BaseModel):
    """POST /v1/payments/intents response."""

    payment_intent_id: str
    client_secret: str
    status: str
    amount_minor: int
    currency: str
    credits: int
    idempotency_key: str
    is_duplicate: bool = False
    publishable_key: str | None = None


class CreateCheckoutSessionRequest(BaseModel):
    """POST /v1/payments/checkout-sessions request body."""

    price_ref: str = Field(..., min_length=1, max_length=255)
    success_url: str = Field(..., min_length=1, max_length=2048)
    cancel_url: str = Field(..., min_length=1, max_length=2048)
    plan_name: str | None = Field(None, max_length=100)
    plan_tier: str | None = Field(None, max_length=50)
    user_type: str | None = Field(None, max_length=50)
    customer_email: str | None = Field(None, min_length=1, max_length=255)


class CheckoutSessionResponse(BaseModel):
    """POST /v1/payments/checkout-sessions response."""

    session_id: str
    url: str
    customer_id: str


class ConfirmPaymentRequest(BaseModel):
    """POST /v1/payments/confirm request body."""

    idempotency_key: str = Field(..., min_length=1, max_length=255)
    payment_intent_id: str = Field(..., min_length=1, max_length=255)


class ConfirmPaymentResponse(BaseModel):
    """POST /v1/payments/confirm response."""

    success: bool
    new_balance: int | None = None
    credits_added: int = 0
    is_duplicate: bool = False
    reason: FailureReason | None = None


class BalanceResponse(BaseModel):
    """GET /v1/credits/balance response."""

    user_id: str
    balance: int


# ============================================================================
# Fee Models
# ============================================================================


class ContactFeeRequest(BaseModel):
    """POST /v1/fees/contact request body."""

    subject_id: str = Field(..., min_length=1, max_length=255)
    credits: int | None = Field(None, gt=0)
    message: str = Field("", max_length=4000)


class ContactFeeResponse(BaseModel):
    """POST /v1/fees/contact response."""

    success: bool
    already_contacted: bool = False
    credits_remaining: int
    reason: FailureReason | None = None


class PlacementFeeRequest(BaseModel):
    """POST /v1/fees/placement request body."""

    placement_id: str = Field(..., min_length=1, max_length=255)
    amount: int | None = Field(None, gt=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    notes: str | None = Field(None, max_length=1000)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        return _validate_currency(v) if v is not None else None


class PlacementFeeRefundRequest(BaseModel):
    """POST /v1/fees/placement/{placement_id}/refund request body."""

    reason: str | None = Field(None, max_length=1000)


class PlacementFeeResponse(BaseModel):
    """Placement fee operation response."""

    success: bool
    placement_id: str
    fee_status: FeeStatus | None = None
    amount: int | None = None
    currency: str | None = None
    balance: int
    already_exists: bool = False
    reason: FailureReason | None = None


# ============================================================================
# Idempotency Maintenance Models
# ============================================================================


class CleanupRequest(BaseModel):
    """POST /v1/idempotency/cleanup request body."""

    max_age_hours: int = 24


class CleanupResponse(BaseModel):
    """POST /v1/idempotency/cleanup response."""

    deleted: int
    max_age_hours: int
    scoped_to_user: str | None


# ============================================================================
# Webhook / Health Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Webhook acknowledgement body."""

    received: bool = True
    event_id: str | None = None
    warning: str | None = None


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str

