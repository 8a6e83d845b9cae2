"""
Checkout Orchestrator - Provider-facing purchase and subscription flows.

NO DICTIONARIES - Results are typed dataclasses; the cached idempotency
result is the single JSON payload and has a fixed shape:
    {"new_balance": int, "credits_added": int, "payment_ref": str}

A credit purchase touches three entry points that may race: the client's
create call, the client's confirm call after the provider redirect, and the
provider's payment_intent.succeeded webhook. All three converge on
``_settle``, which credits at most once per payment intent and completes
the idempotency record at most once.
"""

from dataclasses import replace
from typing import Any

from structlog import get_logger

from paysync.config import settings
from paysync.db.store import LedgerStore
from paysync.exceptions import (
    AuthorizationError,
    DatabaseError,
    IdempotencyConflictError,
    InvalidArgumentError,
    PaymentProviderError,
)
from paysync.models.api import FailureReason, IdempotencyStatus, OperationType, TransactionType
from paysync.models.domain import (
    CheckoutSessionMetadata,
    ConfirmResult,
    IdempotencyRecordData,
    PaymentIntentResult,
    PaymentMetadata,
)
from paysync.observability.tracing import trace_operation
from paysync.services.idempotency import IdempotencyGuard
from paysync.services.ledger import BalanceLedger
from paysync.services.payment_provider import (
    CheckoutSessionRequest,
    CheckoutSessionResult,
    PaymentIntentRequest,
    PaymentProvider,
    ProviderPaymentIntent,
)

logger = get_logger(__name__)

# A purchase is recorded under purchase_credits when started here, or under
# confirm_payment when it was paid out of band and first seen on confirm.
SETTLEABLE_OPERATIONS = frozenset(
    {OperationType.PURCHASE_CREDITS, OperationType.CONFIRM_PAYMENT}
)


def _confirm_from_cached(cached: dict[str, Any] | None) -> ConfirmResult:
    cached = cached or {}
    return ConfirmResult(
        success=True,
        new_balance=cached.get("new_balance"),
        credits_added=int(cached.get("credits_added", 0)),
        is_duplicate=True,
    )


class CheckoutOrchestrator:
    """Coordinates the payment provider, the idempotency guard and the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        provider: PaymentProvider,
        credit_price_minor: int | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.guard = IdempotencyGuard(store)
        self.ledger = BalanceLedger(store)
        self.credit_price_minor = credit_price_minor or settings.credit_price_minor

    # ========================================================================
    # Customers and subscription checkout
    # ========================================================================

    async def resolve_customer(self, user_id: str, email: str | None = None) -> str:
        """
        Return the provider customer id for a user, creating it on first use.

        The provider call carries a per-user idempotency key and the local
        insert is ON CONFLICT DO NOTHING, so concurrent callers end up with
        one customer.
        """
        if not user_id:
            raise InvalidArgumentError("user_id", "must not be empty")

        cached = await self.store.get_customer_ref(user_id)
        if cached is not None:
            return cached

        customer = await self.provider.create_customer(
            user_id, email, idempotency_key=f"customer-{user_id}"
        )
        async with self.store.transaction():
            stored = await self.store.save_customer_ref(user_id, customer.customer_id, email)

        logger.info("provider_customer_resolved", user_id=user_id, customer_id=stored)
        return stored

    async def find_customer_owner(self, customer_id: str | None) -> str | None:
        """
        Map a provider customer to a user: the customer's metadata first,
        then the local customer mapping.
        """
        if customer_id is None:
            return None

        try:
            customer = await self.provider.retrieve_customer(customer_id)
        except PaymentProviderError as exc:
            logger.warning("customer_lookup_failed", customer_id=customer_id, error=str(exc))
        else:
            if customer.metadata.user_id:
                return customer.metadata.user_id

        return await self.store.find_user_by_customer_ref(customer_id)

    async def create_checkout_session(
        self,
        user_id: str,
        price_ref: str,
        metadata: CheckoutSessionMetadata,
        success_url: str,
        cancel_url: str,
        email: str | None = None,
    ) -> CheckoutSessionResult:
        """Create a subscription checkout carrying user_id on session and subscription."""
        if not price_ref:
            raise InvalidArgumentError("price_ref", "must not be empty")

        customer_id = await self.resolve_customer(user_id, email)
        session = await self.provider.create_checkout_session(
            CheckoutSessionRequest(
                customer_id=customer_id,
                price_ref=price_ref,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=replace(metadata, user_id=user_id),
            )
        )
        logger.info(
            "checkout_session_created",
            user_id=user_id,
            session_id=session.session_id,
            price_ref=price_ref,
        )
        return session

    # ========================================================================
    # Credit purchases
    # ========================================================================

    async def create_payment_intent(
        self,
        user_id: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str | None = None,
        credits: int | None = None,
        email: str | None = None,
    ) -> PaymentIntentResult:
        """
        Start a credit purchase.

        The idempotency key guards the local record and is also sent as the
        provider's idempotency key, so a retry after a timeout returns the
        same intent instead of charging twice.
        """
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise InvalidArgumentError("amount_minor", "must be a positive integer")
        if len(currency) != 3 or not currency.isalpha():
            raise InvalidArgumentError("currency", "must be a 3-letter ISO code")
        currency = currency.upper()

        affordable = amount_minor // self.credit_price_minor
        if affordable <= 0:
            raise InvalidArgumentError(
                "amount_minor", f"buys no credits at {self.credit_price_minor} per credit"
            )
        if credits is None:
            credits = affordable
        elif isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise InvalidArgumentError("credits", "must be a positive integer")
        elif credits > affordable:
            raise InvalidArgumentError(
                "credits", f"{amount_minor} minor units buy at most {affordable} credits"
            )

        check = await self.guard.ensure_idempotent(
            user_id,
            OperationType.PURCHASE_CREDITS,
            amount_minor,
            context={"currency": currency, "credits": credits},
            key=idempotency_key,
        )

        if check.is_duplicate and check.external_payment_ref is not None:
            intent = await self.provider.retrieve_payment_intent(check.external_payment_ref)
            return self._intent_result(intent, credits, check.key, is_duplicate=True)

        try:
            customer_id = await self.resolve_customer(user_id, email)
            intent = await self.provider.create_payment_intent(
                PaymentIntentRequest(
                    amount_minor=amount_minor,
                    currency=currency,
                    description=f"Purchase of {credits} credits",
                    customer_id=customer_id,
                    customer_email=email,
                    metadata=PaymentMetadata(
                        user_id=user_id, idempotency_key=check.key, credits=credits
                    ),
                    idempotency_key=check.key,
                )
            )
        except PaymentProviderError as exc:
            await self.guard.fail(check.key, str(exc))
            raise

        await self.guard.attach_payment(check.key, intent.payment_intent_id)
        logger.info(
            "purchase_intent_created",
            user_id=user_id,
            payment_intent_id=intent.payment_intent_id,
            idempotency_key=check.key,
            credits=credits,
        )
        return self._intent_result(intent, credits, check.key, is_duplicate=False)

    async def confirm_payment(
        self, user_id: str, idempotency_key: str, payment_intent_id: str
    ) -> ConfirmResult:
        """
        Confirm a payment completed out of band and credit the purchase.

        Safe to call any number of times, before or after the webhook: the
        purchase is credited once and later calls replay the cached result.

        Raises:
            AuthorizationError: The intent belongs to another user or its owner is unknown
            IdempotencyConflictError: Key bound to a different user or intent
            PaymentProviderError: Provider unreachable (record marked failed)
        """
        if not idempotency_key:
            raise InvalidArgumentError("idempotency_key", "must not be empty")
        if not payment_intent_id:
            raise InvalidArgumentError("payment_intent_id", "must not be empty")

        with trace_operation(
            "confirm_payment", user_id=user_id, payment_intent_id=payment_intent_id
        ):
            record = await self.guard.get_record(idempotency_key)
            if record is not None:
                self._check_record(record, user_id, payment_intent_id)
                if record.status == IdempotencyStatus.COMPLETED:
                    logger.info("confirm_payment_replay", key=idempotency_key, user_id=user_id)
                    return _confirm_from_cached(record.result)

            try:
                intent = await self.provider.retrieve_payment_intent(payment_intent_id)
            except PaymentProviderError as exc:
                if record is not None:
                    await self.guard.fail(idempotency_key, str(exc))
                raise

            owner = intent.metadata.user_id or await self.find_customer_owner(
                intent.customer_id
            )
            if owner != user_id:
                logger.warning(
                    "confirm_payment_owner_mismatch",
                    user_id=user_id,
                    payment_intent_id=payment_intent_id,
                    owner_resolved=owner is not None,
                )
                raise AuthorizationError(user_id, f"payment_intent:{payment_intent_id}")

            if not intent.succeeded:
                logger.info(
                    "confirm_payment_not_completed",
                    user_id=user_id,
                    payment_intent_id=payment_intent_id,
                    status=intent.status,
                )
                return ConfirmResult(
                    success=False,
                    new_balance=await self.ledger.get_balance(user_id),
                    reason=FailureReason.PAYMENT_NOT_COMPLETED,
                )

            if record is None:
                check = await self.guard.ensure_idempotent(
                    user_id,
                    OperationType.CONFIRM_PAYMENT,
                    intent.amount_minor,
                    key=idempotency_key,
                )
                if check.is_duplicate:
                    return _confirm_from_cached(check.cached_result)

            if record is None or record.external_payment_ref is None:
                await self.guard.attach_payment(idempotency_key, payment_intent_id)

            return await self._settle(idempotency_key, user_id, intent)

    async def settle_payment_intent(self, intent: ProviderPaymentIntent) -> ConfirmResult | None:
        """
        Settle a succeeded intent reported by webhook against its pending record.

        Returns None when the intent is not paired with an open purchase record.
        """
        if not intent.succeeded:
            return None

        key = intent.metadata.idempotency_key
        if key is not None:
            record = await self.guard.get_record(key)
        else:
            record = await self.store.find_idempotency_record_by_payment_ref(
                intent.payment_intent_id
            )

        if record is None or record.operation not in SETTLEABLE_OPERATIONS:
            return None
        if record.status == IdempotencyStatus.COMPLETED:
            logger.info("settlement_already_completed", key=record.key)
            return None
        if (
            record.external_payment_ref is not None
            and record.external_payment_ref != intent.payment_intent_id
        ):
            logger.warning(
                "settlement_payment_ref_mismatch",
                key=record.key,
                record_ref=record.external_payment_ref,
                payment_intent_id=intent.payment_intent_id,
            )
            return None
        if intent.metadata.user_id is not None and intent.metadata.user_id != record.user_id:
            logger.warning(
                "settlement_owner_mismatch",
                key=record.key,
                record_user_id=record.user_id,
                intent_user_id=intent.metadata.user_id,
            )
            return None

        if record.external_payment_ref is None:
            await self.guard.attach_payment(record.key, intent.payment_intent_id)
        return await self._settle(record.key, record.user_id, intent)

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _settle(
        self, key: str, user_id: str, intent: ProviderPaymentIntent
    ) -> ConfirmResult:
        # Metadata may ask for fewer credits than were paid for, never more.
        paid_for = intent.amount_received // self.credit_price_minor
        credits = min(intent.metadata.credits or paid_for, paid_for)
        if credits <= 0:
            await self.guard.fail(key, "payment carries no credits")
            raise InvalidArgumentError(
                "payment_intent_id", f"{intent.payment_intent_id} carries no credits"
            )

        try:
            credit = await self.ledger.credit(
                user_id,
                credits,
                TransactionType.PURCHASE,
                description=f"Credit purchase {intent.payment_intent_id}",
                external_ref=intent.payment_intent_id,
            )
        except DatabaseError as exc:
            await self.guard.fail(key, str(exc))
            raise

        won = await self.guard.complete(
            key,
            {
                "new_balance": credit.new_balance,
                "credits_added": credits,
                "payment_ref": intent.payment_intent_id,
            },
        )
        if not won:
            record = await self.guard.get_record(key)
            return _confirm_from_cached(record.result if record is not None else None)

        logger.info(
            "payment_settled",
            user_id=user_id,
            payment_intent_id=intent.payment_intent_id,
            credits_added=credits,
            new_balance=credit.new_balance,
            applied=credit.applied,
        )
        return ConfirmResult(
            success=True,
            new_balance=credit.new_balance,
            credits_added=credits,
            is_duplicate=not credit.applied,
        )

    @staticmethod
    def _check_record(record: IdempotencyRecordData, user_id: str, payment_intent_id: str) -> None:
        if record.user_id != user_id:
            raise IdempotencyConflictError(record.key, "key belongs to a different user")
        if record.operation not in SETTLEABLE_OPERATIONS:
            raise IdempotencyConflictError(
                record.key, f"key was used for {record.operation.value}"
            )
        if (
            record.external_payment_ref is not None
            and record.external_payment_ref != payment_intent_id
        ):
            raise IdempotencyConflictError(
                record.key,
                f"key is bound to payment {record.external_payment_ref}, not {payment_intent_id}",
            )

    @staticmethod
    def _intent_result(
        intent: ProviderPaymentIntent, credits: int, key: str, is_duplicate: bool
    ) -> PaymentIntentResult:
        return PaymentIntentResult(
            payment_intent_id=intent.payment_intent_id,
            client_secret=intent.client_secret,
            status=intent.status,
            amount_minor=intent.amount_minor,
            currency=intent.currency,
            credits=intent.metadata.credits or credits,
            idempotency_key=key,
            is_duplicate=is_duplicate,
        )
