"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations
(the opaque idempotency result is the one JSONB column).
"""

from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from paysync.models.api import (
    FeeStatus,
    IdempotencyStatus,
    OperationType,
    SubscriptionStatus,
    TransactionType,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_values(enum_cls: type) -> list[str]:
    return [member.value for member in enum_cls]


class IdempotencyRecord(Base):
    """
    ORM model for idempotency_records table.

    One row per operation key. Once completed, the cached result is
    returned verbatim on replay and never rewritten.
    """

    __tablename__ = "idempotency_records"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[OperationType] = mapped_column(
        SQLEnum(
            OperationType,
            name="idempotency_operation",
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[IdempotencyStatus] = mapped_column(
        SQLEnum(
            IdempotencyStatus,
            name="idempotency_status",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=IdempotencyStatus.PENDING,
    )
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    external_payment_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("key", name="uq_idempotency_records_key"),
        Index("idx_idempotency_records_user_created", "user_id", "created_at"),
        Index("idx_idempotency_records_created_at", "created_at"),
        Index(
            "idx_idempotency_records_payment_ref",
            "external_payment_ref",
            postgresql_where=(external_payment_ref.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<IdempotencyRecord(key={self.key}, user_id={self.user_id}, "
            f"operation={self.operation}, status={self.status})>"
        )


class CreditAccount(Base):
    """
    ORM model for credit_accounts table.

    Balance is decremented only through a conditional UPDATE; the CHECK
    constraint backs the non-negative invariant.
    """

    __tablename__ = "credit_accounts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_purchased: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_purchase_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
        CheckConstraint(
            "total_purchased >= 0", name="ck_credit_accounts_total_purchased_non_negative"
        ),
        UniqueConstraint("user_id", name="uq_credit_accounts_user_id"),
    )

    def __repr__(self) -> str:
        return f"<CreditAccount(user_id={self.user_id}, balance={self.balance})>"


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only. A provider payment ref can be credited once per
    transaction type (partial unique index).
    """

    __tablename__ = "credit_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_type: Mapped[TransactionType] = mapped_column(
        SQLEnum(
            TransactionType,
            name="credit_transaction_type",
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    external_payment_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_credit_transactions_amount_non_zero"),
        CheckConstraint("balance_after >= 0", name="ck_credit_transactions_balance_after"),
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
        Index(
            "uq_credit_transactions_payment_ref_type",
            "external_payment_ref",
            "transaction_type",
            unique=True,
            postgresql_where=(external_payment_ref.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CreditTransaction(id={self.id}, user_id={self.user_id}, "
            f"amount={self.amount}, type={self.transaction_type})>"
        )


class Subscription(Base):
    """
    ORM model for subscriptions table.

    Upserted by external subscription id; user_id is set on first write only.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    external_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[SubscriptionStatus] = mapped_column(
        SQLEnum(
            SubscriptionStatus,
            name="subscription_status",
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    plan_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    plan_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_period: Mapped[str] = mapped_column(String(20), nullable=False, default="month")
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_subscriptions_amount_non_negative"),
        UniqueConstraint(
            "external_subscription_id", name="uq_subscriptions_external_subscription_id"
        ),
        Index("idx_subscriptions_user_id", "user_id"),
        Index("idx_subscriptions_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(external_subscription_id={self.external_subscription_id}, "
            f"user_id={self.user_id}, status={self.status})>"
        )


class Payment(Base):
    """ORM model for payments table (insert-only audit of provider payments)."""

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_payment_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("external_payment_ref", name="uq_payments_external_payment_ref"),
        Index("idx_payments_user_created", "user_id", "created_at"),
    )


class ProviderCustomer(Base):
    """ORM model for provider_customers table (user to provider customer mapping)."""

    __tablename__ = "provider_customers"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_provider_customers_user_id"),
        UniqueConstraint(
            "external_customer_id", name="uq_provider_customers_external_customer_id"
        ),
    )


class ContactFee(Base):
    """ORM model for contact_fees table. One row per (payer, subject) pair."""

    __tablename__ = "contact_fees"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    payer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    credits_charged: Mapped[int] = mapped_column(BigInteger, nullable=False)
    message_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_charged > 0", name="ck_contact_fees_credits_positive"),
        UniqueConstraint("payer_id", "subject_id", name="uq_contact_fees_payer_subject"),
    )


class PlacementFee(Base):
    """
    ORM model for placement_fees table.

    Fee moves escrow -> released or escrow -> credited exactly once.
    """

    __tablename__ = "placement_fees"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    payer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    fee_status: Mapped[FeeStatus] = mapped_column(
        SQLEnum(FeeStatus, name="placement_fee_status", values_callable=_enum_values),
        nullable=False,
        default=FeeStatus.ESCROW,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    credited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_placement_fees_amount_positive"),
        UniqueConstraint("payer_id", "subject_id", name="uq_placement_fees_payer_subject"),
        Index("idx_placement_fees_status", "fee_status"),
    )
