"""
Fee Service - Contact fees and placement fee escrow.

NO DICTIONARIES - Results are ContactFeeResult / PlacementFeeResult.

Both fee kinds are naturally idempotent on (payer_id, subject_id): the fee
row is inserted in the same transaction as the debit, so a concurrent
duplicate violates the unique constraint and rolls its debit back.
"""

import hashlib

from structlog import get_logger

from paysync.config import settings
from paysync.db.store import LedgerStore
from paysync.exceptions import DuplicateRecordError, InvalidArgumentError
from paysync.models.api import FailureReason, FeeStatus, OperationType, TransactionType
from paysync.models.domain import ContactFeeResult, DebitResult, PlacementFeeResult
from paysync.services.idempotency import IdempotencyGuard
from paysync.services.ledger import BalanceLedger

logger = get_logger(__name__)


def hash_message(message: str) -> str | None:
    if not message:
        return None
    return hashlib.sha256(message.encode("utf-8")).hexdigest()


class FeeService:
    """Charges contact fees and manages placement fee escrow."""

    def __init__(self, store: LedgerStore, default_currency: str | None = None) -> None:
        self.store = store
        self.default_currency = (default_currency or settings.default_currency).upper()
        self.guard = IdempotencyGuard(store)
        self.ledger = BalanceLedger(store)

    # ========================================================================
    # Contact fees
    # ========================================================================

    async def charge_contact_fee(
        self,
        payer_id: str,
        subject_id: str,
        credits: int | None = None,
        message: str = "",
        idempotency_key: str | None = None,
    ) -> ContactFeeResult:
        """
        Debit the payer once per subject.

        A second call for the same pair returns already_contacted and does
        not debit again.
        """
        if not subject_id:
            raise InvalidArgumentError("subject_id", "must not be empty")
        if payer_id == subject_id:
            raise InvalidArgumentError("subject_id", "cannot contact yourself")
        credits = credits if credits is not None else settings.contact_fee_credits
        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise InvalidArgumentError("credits", "must be a positive integer")

        if await self.store.contact_fee_exists(payer_id, subject_id):
            return await self._already_contacted(payer_id, subject_id)

        check = await self.guard.ensure_idempotent(
            payer_id,
            OperationType.CHARGE_CONTACT_FEE,
            credits,
            context={"subject_id": subject_id},
            key=idempotency_key,
        )
        if check.is_duplicate:
            return await self._already_contacted(payer_id, subject_id)

        try:
            async with self.store.transaction():
                debit = await self.ledger.debit_within(
                    payer_id,
                    credits,
                    TransactionType.CHARGE,
                    description=f"Contact fee for {subject_id}",
                )
                if debit.success:
                    await self.store.insert_contact_fee(
                        payer_id, subject_id, credits, hash_message(message)
                    )
        except DuplicateRecordError:
            # A concurrent call for the same pair committed first; our debit was rolled back.
            return await self._already_contacted(payer_id, subject_id)

        if not debit.success:
            await self.guard.fail(check.key, FailureReason.INSUFFICIENT_FUNDS.value)
            return ContactFeeResult(
                success=False,
                credits_remaining=debit.new_balance or 0,
                reason=FailureReason.INSUFFICIENT_FUNDS,
            )

        await self.guard.complete(
            check.key,
            {"subject_id": subject_id, "credits_remaining": debit.new_balance},
        )
        logger.info(
            "contact_fee_charged",
            payer_id=payer_id,
            subject_id=subject_id,
            credits=credits,
            credits_remaining=debit.new_balance,
        )
        return ContactFeeResult(success=True, credits_remaining=debit.new_balance or 0)

    async def _already_contacted(self, payer_id: str, subject_id: str) -> ContactFeeResult:
        balance = await self.store.get_balance(payer_id)
        logger.info("contact_fee_already_charged", payer_id=payer_id, subject_id=subject_id)
        return ContactFeeResult(
            success=False,
            credits_remaining=balance,
            already_contacted=True,
            reason=FailureReason.ALREADY_CONTACTED,
        )

    # ========================================================================
    # Placement fees
    # ========================================================================

    async def hold_placement_fee(
        self,
        payer_id: str,
        placement_id: str,
        amount: int | None = None,
        currency: str | None = None,
        notes: str | None = None,
    ) -> PlacementFeeResult:
        """
        Debit the fee into escrow. Repeating for the same placement is a no-op.

        Balances carry no currency, so only the configured default currency
        is accepted.
        """
        if not placement_id:
            raise InvalidArgumentError("placement_id", "must not be empty")
        amount = amount if amount is not None else settings.placement_fee_amount
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidArgumentError("amount", "must be a positive integer")
        currency = (currency or self.default_currency).upper()
        if currency != self.default_currency:
            raise InvalidArgumentError(
                "currency", f"placement fees are charged in {self.default_currency}"
            )

        existing = await self.store.get_placement_fee(payer_id, placement_id)
        if existing is not None:
            return PlacementFeeResult(
                success=True,
                balance=await self.store.get_balance(payer_id),
                fee=existing,
                already_exists=True,
            )

        fee = None
        try:
            async with self.store.transaction():
                debit: DebitResult = await self.ledger.debit_within(
                    payer_id,
                    amount,
                    TransactionType.CHARGE,
                    description=f"Placement fee escrow for {placement_id}",
                )
                if debit.success:
                    fee = await self.store.insert_placement_fee(
                        payer_id, placement_id, amount, currency, notes
                    )
        except DuplicateRecordError:
            return PlacementFeeResult(
                success=True,
                balance=await self.store.get_balance(payer_id),
                fee=await self.store.get_placement_fee(payer_id, placement_id),
                already_exists=True,
            )

        if fee is None:
            return PlacementFeeResult(
                success=False,
                balance=debit.new_balance or 0,
                reason=FailureReason.INSUFFICIENT_FUNDS,
            )

        logger.info(
            "placement_fee_held",
            payer_id=payer_id,
            placement_id=placement_id,
            amount=amount,
            balance=debit.new_balance,
        )
        return PlacementFeeResult(success=True, balance=debit.new_balance or 0, fee=fee)

    async def release_placement_fee(self, payer_id: str, placement_id: str) -> PlacementFeeResult:
        """Escrow to released (placement completed). No balance change."""
        async with self.store.transaction():
            fee = await self.store.transition_placement_fee(
                payer_id, placement_id, FeeStatus.ESCROW, FeeStatus.RELEASED
            )

        if fee is None:
            return await self._transition_failed(payer_id, placement_id)

        logger.info("placement_fee_released", payer_id=payer_id, placement_id=placement_id)
        return PlacementFeeResult(
            success=True, balance=await self.store.get_balance(payer_id), fee=fee
        )

    async def refund_placement_fee(
        self, payer_id: str, placement_id: str, reason: str | None = None
    ) -> PlacementFeeResult:
        """
        Escrow to credited (placement fell through) and return the fee.

        The transition and the refund credit commit together, so the fee is
        refunded exactly once.
        """
        new_balance = None
        async with self.store.transaction():
            fee = await self.store.transition_placement_fee(
                payer_id, placement_id, FeeStatus.ESCROW, FeeStatus.CREDITED
            )
            if fee is not None:
                description = f"Placement fee refund for {placement_id}"
                if reason:
                    description = f"{description}: {reason}"
                credit = await self.ledger.credit_within(
                    payer_id,
                    fee.amount,
                    TransactionType.REFUND,
                    description=description,
                    external_ref=f"placement-fee:{fee.fee_id}",
                )
                new_balance = credit.new_balance

        if fee is None:
            return await self._transition_failed(payer_id, placement_id)

        logger.info(
            "placement_fee_refunded",
            payer_id=payer_id,
            placement_id=placement_id,
            amount=fee.amount,
            balance=new_balance,
        )
        return PlacementFeeResult(success=True, balance=new_balance or 0, fee=fee)

    async def _transition_failed(self, payer_id: str, placement_id: str) -> PlacementFeeResult:
        existing = await self.store.get_placement_fee(payer_id, placement_id)
        reason = (
            FailureReason.FEE_NOT_FOUND if existing is None else FailureReason.FEE_NOT_IN_ESCROW
        )
        logger.info(
            "placement_fee_transition_rejected",
            payer_id=payer_id,
            placement_id=placement_id,
            reason=reason.value,
        )
        return PlacementFeeResult(
            success=False,
            balance=await self.store.get_balance(payer_id),
            fee=existing,
            reason=reason,
        )
