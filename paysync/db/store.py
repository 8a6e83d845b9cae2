"""
Ledger Store - Query surface over the payment tables.

NO DICTIONARIES - Rows are converted to domain dataclasses at this boundary.

Every state change is a single atomic statement: INSERT ... ON CONFLICT,
conditional UPDATE ... WHERE ... RETURNING, or range DELETE. Services never
read-then-write in Python to enforce an invariant.
"""

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Protocol

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from paysync.db.models import (
    ContactFee,
    CreditAccount,
    CreditTransaction,
    IdempotencyRecord,
    Payment,
    PlacementFee,
    ProviderCustomer,
    Subscription,
)
from paysync.exceptions import DatabaseError, DuplicateRecordError
from paysync.models.api import (
    FeeStatus,
    IdempotencyStatus,
    OperationType,
    SubscriptionStatus,
    TransactionType,
)
from paysync.models.domain import (
    CreditTransactionData,
    IdempotencyRecordData,
    PaymentRecordData,
    PlacementFeeData,
    SubscriptionData,
    SubscriptionFields,
)

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class LedgerStore(Protocol):
    """
    Storage protocol used by every payment service.

    Implemented by SqlLedgerStore for PostgreSQL and by an in-memory store
    in the test suite. Mutating calls that must commit together are made
    inside ``transaction()``.
    """

    def transaction(self) -> AbstractAsyncContextManager[None]: ...

    # Idempotency records
    async def get_idempotency_record(self, key: str) -> IdempotencyRecordData | None: ...

    async def find_idempotency_record_by_payment_ref(
        self, external_ref: str
    ) -> IdempotencyRecordData | None: ...

    async def insert_idempotency_record(
        self, key: str, user_id: str, operation: OperationType, amount: int
    ) -> bool: ...

    async def reclaim_failed_idempotency_record(self, key: str) -> bool: ...

    async def attach_payment_ref(self, key: str, external_ref: str) -> bool: ...

    async def complete_idempotency_record(self, key: str, result: dict[str, Any]) -> bool: ...

    async def fail_idempotency_record(self, key: str, error_message: str) -> bool: ...

    async def delete_idempotency_records_before(
        self, cutoff: datetime, user_id: str | None
    ) -> int: ...

    # Credit accounts and transactions
    async def ensure_credit_account(self, user_id: str) -> None: ...

    async def increment_balance(self, user_id: str, amount: int, purchased: bool) -> int: ...

    async def decrement_balance_if_sufficient(self, user_id: str, amount: int) -> int | None: ...

    async def get_balance(self, user_id: str) -> int: ...

    async def insert_credit_transaction(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        external_ref: str | None,
        balance_after: int,
    ) -> CreditTransactionData: ...

    async def find_credit_transaction_by_ref(
        self, external_ref: str, transaction_type: TransactionType
    ) -> CreditTransactionData | None: ...

    # Subscriptions
    async def upsert_subscription(
        self, external_subscription_id: str, user_id: str, fields: SubscriptionFields
    ) -> SubscriptionData: ...

    async def update_subscription_status(
        self, external_subscription_id: str, status: SubscriptionStatus
    ) -> int: ...

    async def get_subscription(self, external_subscription_id: str) -> SubscriptionData | None: ...

    # Provider customers and payments
    async def get_customer_ref(self, user_id: str) -> str | None: ...

    async def find_user_by_customer_ref(self, external_customer_id: str) -> str | None: ...

    async def save_customer_ref(
        self, user_id: str, external_customer_id: str, email: str | None
    ) -> str: ...

    async def insert_payment(self, payment: PaymentRecordData) -> bool: ...

    # Fees
    async def contact_fee_exists(self, payer_id: str, subject_id: str) -> bool: ...

    async def insert_contact_fee(
        self, payer_id: str, subject_id: str, credits: int, message_hash: str | None
    ) -> None: ...

    async def insert_placement_fee(
        self, payer_id: str, subject_id: str, amount: int, currency: str, notes: str | None
    ) -> PlacementFeeData: ...

    async def get_placement_fee(
        self, payer_id: str, subject_id: str
    ) -> PlacementFeeData | None: ...

    async def transition_placement_fee(
        self, payer_id: str, subject_id: str, from_status: FeeStatus, to_status: FeeStatus
    ) -> PlacementFeeData | None: ...


class SqlLedgerStore:
    """PostgreSQL implementation of LedgerStore over an AsyncSession."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Commit everything executed inside the block, or roll all of it back.

        Unique violations surface as DuplicateRecordError, other driver
        failures as DatabaseError; both after the rollback.
        """
        try:
            yield
        except BaseException:
            await self.session.rollback()
            raise
        else:
            try:
                await self.session.commit()
            except IntegrityError as exc:
                await self.session.rollback()
                raise DuplicateRecordError("commit", str(exc.orig)) from exc
            except SQLAlchemyError as exc:
                await self.session.rollback()
                logger.error("ledger_commit_failed", error=str(exc))
                raise DatabaseError(str(exc)) from exc

    async def _execute(self, stmt: Any) -> Any:
        try:
            return await self.session.execute(stmt)
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("ledger_statement_failed", error=str(exc), error_type=type(exc).__name__)
            raise DatabaseError(str(exc)) from exc

    # ========================================================================
    # Idempotency records
    # ========================================================================

    async def get_idempotency_record(self, key: str) -> IdempotencyRecordData | None:
        stmt = (
            select(IdempotencyRecord)
            .where(IdempotencyRecord.key == key)
            .execution_options(populate_existing=True)
        )
        result = await self._execute(stmt)
        row = result.scalar_one_or_none()
        return self._idempotency_to_domain(row) if row is not None else None

    async def find_idempotency_record_by_payment_ref(
        self, external_ref: str
    ) -> IdempotencyRecordData | None:
        stmt = (
            select(IdempotencyRecord)
            .where(IdempotencyRecord.external_payment_ref == external_ref)
            .order_by(IdempotencyRecord.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self._execute(stmt)
        row = result.scalar_one_or_none()
        return self._idempotency_to_domain(row) if row is not None else None

    async def insert_idempotency_record(
        self, key: str, user_id: str, operation: OperationType, amount: int
    ) -> bool:
        """Insert a pending record. Returns False if the key already exists."""
        now = _utc_now()
        stmt = (
            pg_insert(IdempotencyRecord)
            .values(
                key=key,
                user_id=user_id,
                operation=operation,
                amount=amount,
                status=IdempotencyStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["key"])
            .returning(IdempotencyRecord.id)
        )
        result = await self._execute(stmt)
        return result.scalar_one_or_none() is not None

    async def reclaim_failed_idempotency_record(self, key: str) -> bool:
        """Move a failed record back to pending. Exactly one concurrent caller wins."""
        stmt = (
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.key == key,
                IdempotencyRecord.status == IdempotencyStatus.FAILED,
            )
            .values(
                status=IdempotencyStatus.PENDING,
                error_message=None,
                updated_at=_utc_now(),
            )
            .returning(IdempotencyRecord.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt)
        return result.scalar_one_or_none() is not None

    async def attach_payment_ref(self, key: str, external_ref: str) -> bool:
        stmt = (
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.key == key,
                IdempotencyRecord.status != IdempotencyStatus.COMPLETED,
            )
            .values(
                status=IdempotencyStatus.PROCESSING,
                external_payment_ref=external_ref,
                updated_at=_utc_now(),
            )
            .returning(IdempotencyRecord.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt)
        return result.scalar_one_or_none() is not None

    async def complete_idempotency_record(self, key: str, result: dict[str, Any]) -> bool:
        """Mark completed with a cached result. No-op on an already completed record."""
        stmt = (
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.key == key,
                IdempotencyRecord.status != IdempotencyStatus.COMPLETED,
            )
            .values(
                status=IdempotencyStatus.COMPLETED,
                result=result,
                error_message=None,
                updated_at=_utc_now(),
            )
            .returning(IdempotencyRecord.id)
            .execution_options(synchronize_session=False)
        )
        res = await self._execute(stmt)
        return res.scalar_one_or_none() is not None

    async def fail_idempotency_record(self, key: str, error_message: str) -> bool:
        stmt = (
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.key == key,
                IdempotencyRecord.status != IdempotencyStatus.COMPLETED,
            )
            .values(
                status=IdempotencyStatus.FAILED,
                error_message=error_message[:2000],
                updated_at=_utc_now(),
            )
            .returning(IdempotencyRecord.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt)
        return result.scalar_one_or_none() is not None

    async def delete_idempotency_records_before(
        self, cutoff: datetime, user_id: str | None
    ) -> int:
        """Delete records created before cutoff, optionally only those owned by user_id."""
        stmt = delete(IdempotencyRecord).where(IdempotencyRecord.created_at < cutoff)
        if user_id is not None:
            stmt = stmt.where(IdempotencyRecord.user_id == user_id)
        stmt = stmt.execution_options(synchronize_session=False)
        result = await self._execute(stmt)
        return int(result.rowcount or 0)

    # ========================================================================
    # Credit accounts and transactions
    # ========================================================================

    async def ensure_credit_account(self, user_id: str) -> None:
        stmt = (
            pg_insert(CreditAccount)
            .values(user_id=user_id, balance=0, total_purchased=0)
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        await self._execute(stmt)

    async def increment_balance(self, user_id: str, amount: int, purchased: bool) -> int:
        values: dict[str, Any] = {
            "balance": CreditAccount.balance + amount,
            "updated_at": _utc_now(),
        }
        if purchased:
            values["total_purchased"] = CreditAccount.total_purchased + amount
            values["last_purchase_at"] = _utc_now()
        stmt = (
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(**values)
            .returning(CreditAccount.balance)
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt)
        balance = result.scalar_one_or_none()
        if balance is None:
            raise DatabaseError(f"Credit account missing for user {user_id}")
        return int(balance)

    async def decrement_balance_if_sufficient(self, user_id: str, amount: int) -> int | None:
        """Conditional decrement. None means no row matched (insufficient funds)."""
        stmt = (
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id, CreditAccount.balance >= amount)
            .values(balance=CreditAccount.balance - amount, updated_at=_utc_now())
            .returning(CreditAccount.balance)
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt)
        balance = result.scalar_one_or_none()
        return int(balance) if balance is not None else None

    async def get_balance(self, user_id: str) -> int:
        stmt = select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
        result = await self._execute(stmt)
        balance = result.scalar_one_or_none()
        return int(balance) if balance is not None else 0

    async def insert_credit_transaction(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        external_ref: str | None,
        balance_after: int,
    ) -> CreditTransactionData:
        row = CreditTransaction(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            description=description,
            external_payment_ref=external_ref,
            balance_after=balance_after,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            logger.info(
                "credit_transaction_duplicate_ref",
                user_id=user_id,
                external_ref=external_ref,
                transaction_type=transaction_type.value,
            )
            raise DuplicateRecordError(
                "credit_transactions", f"{external_ref}:{transaction_type.value}"
            ) from exc
        return self._transaction_to_domain(row)

    async def find_credit_transaction_by_ref(
        self, external_ref: str, transaction_type: TransactionType
    ) -> CreditTransactionData | None:
        stmt = select(CreditTransaction).where(
            CreditTransaction.external_payment_ref == external_ref,
            CreditTransaction.transaction_type == transaction_type,
        )
        result = await self._execute(stmt)
        row = result.scalar_one_or_none()
        return self._transaction_to_domain(row) if row is not None else None

    # ========================================================================
    # Subscriptions
    # ========================================================================

    async def upsert_subscription(
        self, external_subscription_id: str, user_id: str, fields: SubscriptionFields
    ) -> SubscriptionData:
        """
        Insert or overwrite a subscription keyed by external id.

        user_id is written on insert only; later events never reassign it.
        """
        now = _utc_now()
        mutable = {
            "external_customer_id": fields.external_customer_id,
            "status": fields.status,
            "plan_name": fields.plan_name,
            "plan_type": fields.plan_type,
            "user_type": fields.user_type,
            "amount": fields.amount,
            "currency": fields.currency,
            "billing_period": fields.billing_period,
            "start_date": fields.start_date,
            "end_date": fields.end_date,
        }
        insert_stmt = pg_insert(Subscription).values(
            external_subscription_id=external_subscription_id,
            user_id=user_id,
            created_at=now,
            updated_at=now,
            **mutable,
        )
        stmt = insert_stmt.on_conflict_do_update(
            index_elements=["external_subscription_id"],
            set_={
                **{name: insert_stmt.excluded[name] for name in mutable},
                "updated_at": now,
            },
        ).returning(
            Subscription.external_subscription_id,
            Subscription.user_id,
            Subscription.external_customer_id,
            Subscription.status,
            Subscription.plan_name,
            Subscription.plan_type,
            Subscription.user_type,
            Subscription.amount,
            Subscription.currency,
            Subscription.billing_period,
            Subscription.start_date,
            Subscription.end_date,
            Subscription.updated_at,
        )
        result = await self._execute(stmt)
        row = result.one()
        return SubscriptionData(
            external_subscription_id=row.external_subscription_id,
            user_id=row.user_id,
            external_customer_id=row.external_customer_id,
            status=SubscriptionStatus(row.status),
            plan_name=row.plan_name,
            plan_type=row.plan_type,
            user_type=row.user_type,
            amount=row.amount,
            currency=row.currency,
            billing_period=row.billing_period,
            start_date=row.start_date,
            end_date=row.end_date,
            updated_at=row.updated_at,
        )

    async def update_subscription_status(
        self, external_subscription_id: str, status: SubscriptionStatus
    ) -> int:
        stmt = (
            update(Subscription)
            .where(Subscription.external_subscription_id == external_subscription_id)
            .values(status=status, updated_at=_utc_now())
            .execution_options(synchronize_session=False)
        )
        result = await self._execute(stmt)
        return int(result.rowcount or 0)

    async def get_subscription(self, external_subscription_id: str) -> SubscriptionData | None:
        stmt = select(Subscription).where(
            Subscription.external_subscription_id == external_subscription_id
        ).execution_options(populate_existing=True)
        result = await self._execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return SubscriptionData(
            external_subscription_id=row.external_subscription_id,
            user_id=row.user_id,
            external_customer_id=row.external_customer_id,
            status=SubscriptionStatus(row.status),
            plan_name=row.plan_name,
            plan_type=row.plan_type,
            user_type=row.user_type,
            amount=row.amount,
            currency=row.currency,
            billing_period=row.billing_period,
            start_date=row.start_date,
            end_date=row.end_date,
            updated_at=row.updated_at,
        )

    # ========================================================================
    # Provider customers and payments
    # ========================================================================

    async def get_customer_ref(self, user_id: str) -> str | None:
        stmt = select(ProviderCustomer.external_customer_id).where(
            ProviderCustomer.user_id == user_id
        )
        result = await self._execute(stmt)
        return result.scalar_one_or_none()

    async def find_user_by_customer_ref(self, external_customer_id: str) -> str | None:
        stmt = select(ProviderCustomer.user_id).where(
            ProviderCustomer.external_customer_id == external_customer_id
        )
        result = await self._execute(stmt)
        return result.scalar_one_or_none()

    async def save_customer_ref(
        self, user_id: str, external_customer_id: str, email: str | None
    ) -> str:
        """Store the mapping and return the winning customer id for the user."""
        stmt = (
            pg_insert(ProviderCustomer)
            .values(user_id=user_id, external_customer_id=external_customer_id, email=email)
            .on_conflict_do_nothing()
        )
        await self._execute(stmt)
        stored = await self.get_customer_ref(user_id)
        return stored if stored is not None else external_customer_id

    async def insert_payment(self, payment: PaymentRecordData) -> bool:
        """Insert a payment audit row. Returns False when the ref was already recorded."""
        stmt = (
            pg_insert(Payment)
            .values(
                user_id=payment.user_id,
                external_payment_ref=payment.external_payment_ref,
                amount=payment.amount,
                currency=payment.currency,
                status=payment.status,
                payment_method=payment.payment_method,
            )
            .on_conflict_do_nothing(index_elements=["external_payment_ref"])
            .returning(Payment.id)
        )
        result = await self._execute(stmt)
        return result.scalar_one_or_none() is not None

    # ========================================================================
    # Fees
    # ========================================================================

    async def contact_fee_exists(self, payer_id: str, subject_id: str) -> bool:
        stmt = select(ContactFee.id).where(
            ContactFee.payer_id == payer_id, ContactFee.subject_id == subject_id
        )
        result = await self._execute(stmt)
        return result.scalar_one_or_none() is not None

    async def insert_contact_fee(
        self, payer_id: str, subject_id: str, credits: int, message_hash: str | None
    ) -> None:
        self.session.add(
            ContactFee(
                payer_id=payer_id,
                subject_id=subject_id,
                credits_charged=credits,
                message_hash=message_hash,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise DuplicateRecordError("contact_fees", f"{payer_id}:{subject_id}") from exc

    async def insert_placement_fee(
        self, payer_id: str, subject_id: str, amount: int, currency: str, notes: str | None
    ) -> PlacementFeeData:
        row = PlacementFee(
            payer_id=payer_id,
            subject_id=subject_id,
            amount=amount,
            currency=currency,
            fee_status=FeeStatus.ESCROW,
            notes=notes,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise DuplicateRecordError("placement_fees", f"{payer_id}:{subject_id}") from exc
        return self._placement_fee_to_domain(row)

    async def get_placement_fee(self, payer_id: str, subject_id: str) -> PlacementFeeData | None:
        stmt = select(PlacementFee).where(
            PlacementFee.payer_id == payer_id, PlacementFee.subject_id == subject_id
        ).execution_options(populate_existing=True)
        result = await self._execute(stmt)
        row = result.scalar_one_or_none()
        return self._placement_fee_to_domain(row) if row is not None else None

    async def transition_placement_fee(
        self, payer_id: str, subject_id: str, from_status: FeeStatus, to_status: FeeStatus
    ) -> PlacementFeeData | None:
        """Conditional status transition. None when the fee is not in from_status."""
        now = _utc_now()
        values: dict[str, Any] = {"fee_status": to_status}
        if to_status == FeeStatus.RELEASED:
            values["released_at"] = now
        elif to_status == FeeStatus.CREDITED:
            values["credited_at"] = now
        stmt = (
            update(PlacementFee)
            .where(
                PlacementFee.payer_id == payer_id,
                PlacementFee.subject_id == subject_id,
                PlacementFee.fee_status == from_status,
            )
            .values(**values)
            .returning(PlacementFee)
        )
        result = await self._execute(stmt)
        row = result.scalar_one_or_none()
        return self._placement_fee_to_domain(row) if row is not None else None

    # ========================================================================
    # Converters
    # ========================================================================

    @staticmethod
    def _idempotency_to_domain(row: IdempotencyRecord) -> IdempotencyRecordData:
        return IdempotencyRecordData(
            key=row.key,
            user_id=row.user_id,
            operation=OperationType(row.operation),
            amount=row.amount,
            status=IdempotencyStatus(row.status),
            result=row.result,
            external_payment_ref=row.external_payment_ref,
            error_message=row.error_message,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _transaction_to_domain(row: CreditTransaction) -> CreditTransactionData:
        return CreditTransactionData(
            transaction_id=row.id,
            user_id=row.user_id,
            amount=row.amount,
            transaction_type=TransactionType(row.transaction_type),
            description=row.description,
            external_payment_ref=row.external_payment_ref,
            balance_after=row.balance_after,
            created_at=row.created_at,
        )

    @staticmethod
    def _placement_fee_to_domain(row: PlacementFee) -> PlacementFeeData:
        return PlacementFeeData(
            fee_id=row.id,
            payer_id=row.payer_id,
            subject_id=row.subject_id,
            amount=row.amount,
            currency=row.currency,
            fee_status=FeeStatus(row.fee_status),
            notes=row.notes,
            released_at=row.released_at,
            credited_at=row.credited_at,
            created_at=row.created_at,
        )
