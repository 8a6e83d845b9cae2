"""
Balance Ledger - Credit balance mutations with an append-only audit trail.

NO DICTIONARIES - Results are CreditResult / DebitResult dataclasses.

Balances only move through atomic statements: an increment, or a decrement
guarded by ``balance >= amount``. Each mutation appends a transaction row in
the same database transaction. Insufficient funds is a result, not an error.
"""

from structlog import get_logger

from paysync.db.store import LedgerStore
from paysync.exceptions import DuplicateRecordError, InvalidArgumentError
from paysync.models.api import FailureReason, TransactionType
from paysync.models.domain import CreditResult, DebitResult
from paysync.observability.metrics import metrics

logger = get_logger(__name__)


def _validate(user_id: str, amount: int) -> None:
    if not user_id:
        raise InvalidArgumentError("user_id", "must not be empty")
    # bool is an int subclass; reject it along with floats.
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidArgumentError("amount", f"must be an integer, got {type(amount).__name__}")
    if amount <= 0:
        raise InvalidArgumentError("amount", f"must be positive, got {amount}")


class BalanceLedger:
    """Credits and debits against credit_accounts."""

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    async def get_balance(self, user_id: str) -> int:
        """Current balance; 0 for users without an account."""
        if not user_id:
            raise InvalidArgumentError("user_id", "must not be empty")
        return await self.store.get_balance(user_id)

    async def credit(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        external_ref: str | None = None,
    ) -> CreditResult:
        """
        Add credits in one database transaction.

        With an external_ref the credit is applied at most once: a replay
        returns applied=False and the current balance.
        """
        _validate(user_id, amount)

        if external_ref is not None:
            existing = await self.store.find_credit_transaction_by_ref(
                external_ref, transaction_type
            )
            if existing is not None:
                return await self._credit_replay(user_id, transaction_type, external_ref, amount)

        try:
            async with self.store.transaction():
                result = await self.credit_within(
                    user_id, amount, transaction_type, description, external_ref
                )
        except DuplicateRecordError:
            # Concurrent credit for the same ref won the unique index.
            return await self._credit_replay(user_id, transaction_type, external_ref, amount)

        return result

    async def credit_within(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        external_ref: str | None = None,
    ) -> CreditResult:
        """Apply a credit inside a transaction already opened by the caller."""
        _validate(user_id, amount)

        await self.store.ensure_credit_account(user_id)
        new_balance = await self.store.increment_balance(
            user_id, amount, purchased=transaction_type == TransactionType.PURCHASE
        )
        transaction = await self.store.insert_credit_transaction(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            description=description,
            external_ref=external_ref,
            balance_after=new_balance,
        )

        metrics.record_ledger_mutation(transaction_type.value, "applied", amount)
        logger.info(
            "credit_applied",
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type.value,
            external_ref=external_ref,
            new_balance=new_balance,
        )
        return CreditResult(
            applied=True, new_balance=new_balance, transaction_id=transaction.transaction_id
        )

    async def debit(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        external_ref: str | None = None,
    ) -> DebitResult:
        """
        Remove credits if the balance covers the amount.

        Returns success=False with reason INSUFFICIENT_FUNDS otherwise; the
        balance is never driven negative.
        """
        _validate(user_id, amount)

        if external_ref is not None:
            existing = await self.store.find_credit_transaction_by_ref(
                external_ref, transaction_type
            )
            if existing is not None:
                return DebitResult(
                    success=True,
                    new_balance=await self.store.get_balance(user_id),
                    transaction_id=existing.transaction_id,
                )

        async with self.store.transaction():
            return await self.debit_within(
                user_id, amount, transaction_type, description, external_ref
            )

    async def debit_within(
        self,
        user_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        external_ref: str | None = None,
    ) -> DebitResult:
        """
        Conditional debit inside a transaction already opened by the caller.

        Callers insert dependent rows after this returns success, in the
        same transaction, so the decrement always precedes them.
        """
        _validate(user_id, amount)

        new_balance = await self.store.decrement_balance_if_sufficient(user_id, amount)
        if new_balance is None:
            balance = await self.store.get_balance(user_id)
            metrics.record_ledger_mutation(transaction_type.value, "insufficient_funds", amount)
            logger.info(
                "debit_insufficient_funds",
                user_id=user_id,
                amount=amount,
                balance=balance,
            )
            return DebitResult(
                success=False,
                new_balance=balance,
                reason=FailureReason.INSUFFICIENT_FUNDS,
            )

        transaction = await self.store.insert_credit_transaction(
            user_id=user_id,
            amount=-amount,
            transaction_type=transaction_type,
            description=description,
            external_ref=external_ref,
            balance_after=new_balance,
        )

        metrics.record_ledger_mutation(transaction_type.value, "applied", amount)
        logger.info(
            "debit_applied",
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type.value,
            new_balance=new_balance,
        )
        return DebitResult(
            success=True, new_balance=new_balance, transaction_id=transaction.transaction_id
        )

    async def _credit_replay(
        self,
        user_id: str,
        transaction_type: TransactionType,
        external_ref: str | None,
        amount: int,
    ) -> CreditResult:
        balance = await self.store.get_balance(user_id)
        metrics.record_ledger_mutation(transaction_type.value, "duplicate", amount)
        logger.info(
            "credit_already_applied",
            user_id=user_id,
            external_ref=external_ref,
            balance=balance,
        )
        return CreditResult(applied=False, new_balance=balance)
