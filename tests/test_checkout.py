"""
Tests for CheckoutOrchestrator.

Covers the credit purchase flow end to end against the fake provider:
intent creation, confirmation, webhook settlement and their races.
"""

import pytest

from paysync.exceptions import (
    AuthorizationError,
    IdempotencyConflictError,
    InvalidArgumentError,
    PaymentProviderError,
)
from paysync.models.api import FailureReason, IdempotencyStatus, OperationType, TransactionType
from paysync.models.domain import CheckoutSessionMetadata
from paysync.services.checkout import CheckoutOrchestrator

from conftest import make_intent


async def _purchase(orchestrator: CheckoutOrchestrator, key: str = "purchase-1"):
    return await orchestrator.create_payment_intent(
        user_id="user-1", amount_minor=2000, currency="usd", idempotency_key=key
    )


class TestCreatePaymentIntent:
    """Tests for starting a purchase."""

    async def test_creates_intent_and_record(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        result = await _purchase(orchestrator)

        assert result.credits == 1000
        assert result.amount_minor == 2000
        assert result.idempotency_key == "purchase-1"
        assert result.is_duplicate is False
        record = store.idempotency["purchase-1"]
        assert record.operation == OperationType.PURCHASE_CREDITS
        assert record.status == IdempotencyStatus.PROCESSING
        assert record.external_payment_ref == result.payment_intent_id
        intent = provider.intents[result.payment_intent_id]
        assert intent.metadata.user_id == "user-1"
        assert intent.metadata.idempotency_key == "purchase-1"
        assert intent.metadata.credits == 1000

    async def test_retry_returns_same_intent(
        self, orchestrator: CheckoutOrchestrator, provider
    ) -> None:
        first = await _purchase(orchestrator)
        second = await _purchase(orchestrator)

        assert first.payment_intent_id == second.payment_intent_id
        assert len(provider.intents) == 1

    async def test_completed_purchase_is_replayed(
        self, orchestrator: CheckoutOrchestrator, provider
    ) -> None:
        created = await _purchase(orchestrator)
        provider.succeed(created.payment_intent_id)
        await orchestrator.confirm_payment("user-1", "purchase-1", created.payment_intent_id)

        replay = await _purchase(orchestrator)

        assert replay.is_duplicate is True
        assert replay.payment_intent_id == created.payment_intent_id
        assert len(provider.intents) == 1

    async def test_provider_failure_marks_record_failed(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        provider.fail_with = PaymentProviderError("timeout")

        with pytest.raises(PaymentProviderError):
            await _purchase(orchestrator)
        assert store.idempotency["purchase-1"].status == IdempotencyStatus.FAILED

        retried = await _purchase(orchestrator)
        assert retried.payment_intent_id in provider.intents
        assert store.idempotency["purchase-1"].status == IdempotencyStatus.PROCESSING

    async def test_derived_key_without_caller_key(
        self, orchestrator: CheckoutOrchestrator
    ) -> None:
        result = await orchestrator.create_payment_intent("user-1", 2000, "USD")
        assert result.idempotency_key.startswith("idem_")

    @pytest.mark.parametrize(
        ("amount", "currency"), [(0, "USD"), (-1, "USD"), (1, "USD"), (2000, "US"), (2000, "U$D")]
    )
    async def test_invalid_arguments(
        self, orchestrator: CheckoutOrchestrator, store, amount: int, currency: str
    ) -> None:
        with pytest.raises(InvalidArgumentError):
            await orchestrator.create_payment_intent("user-1", amount, currency)
        assert store.idempotency == {}
    async def test_requested_credits_capped_by_amount(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        """50 minor units at 2 per credit cannot buy more than 25 credits."""
        with pytest.raises(InvalidArgumentError, match="at most 25 credits"):
            await orchestrator.create_payment_intent(
                "user-1", 50, "USD", idempotency_key="cheap", credits=1_000_000
            )
        assert store.idempotency == {}
        assert provider.intents == {}

    async def test_fewer_credits_than_paid_for(
        self, orchestrator: CheckoutOrchestrator, provider
    ) -> None:
        result = await orchestrator.create_payment_intent(
            "user-1", 2000, "USD", idempotency_key="discounted", credits=500
        )
        assert result.credits == 500
        assert provider.intents[result.payment_intent_id].metadata.credits == 500

    async def test_key_reused_with_other_amount_conflicts(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        first = await _purchase(orchestrator, key="k1")

        with pytest.raises(IdempotencyConflictError):
            await orchestrator.create_payment_intent(
                "user-1", 9000, "USD", idempotency_key="k1"
            )

        record = store.idempotency["k1"]
        assert record.amount == 2000
        assert record.status == IdempotencyStatus.PROCESSING
        assert record.external_payment_ref == first.payment_intent_id
        assert len(provider.intents) == 1


class TestConfirmPayment:
    """Tests for confirmation after the provider redirect."""

    async def test_purchase_scenario(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        """2000 minor units at 2 per credit buys 1000 credits, credited once."""
        created = await _purchase(orchestrator)
        provider.succeed(created.payment_intent_id)

        result = await orchestrator.confirm_payment(
            "user-1", "purchase-1", created.payment_intent_id
        )

        assert result.success is True
        assert result.new_balance == 1000
        assert result.credits_added == 1000
        assert result.is_duplicate is False
        assert store.balances["user-1"] == 1000
        purchases = [
            t for t in store.transactions_for("user-1")
            if t.transaction_type == TransactionType.PURCHASE
        ]
        assert len(purchases) == 1
        assert purchases[0].external_payment_ref == created.payment_intent_id
        record = store.idempotency["purchase-1"]
        assert record.status == IdempotencyStatus.COMPLETED
        assert record.result["new_balance"] == 1000

    async def test_confirm_is_idempotent(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        created = await _purchase(orchestrator)
        provider.succeed(created.payment_intent_id)
        await orchestrator.confirm_payment("user-1", "purchase-1", created.payment_intent_id)
        retrievals = provider.calls.count("retrieve_payment_intent")

        again = await orchestrator.confirm_payment(
            "user-1", "purchase-1", created.payment_intent_id
        )

        assert again.success is True
        assert again.is_duplicate is True
        assert again.new_balance == 1000
        assert again.credits_added == 1000
        assert store.balances["user-1"] == 1000
        assert provider.calls.count("retrieve_payment_intent") == retrievals

    async def test_not_yet_paid(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        created = await _purchase(orchestrator)

        result = await orchestrator.confirm_payment(
            "user-1", "purchase-1", created.payment_intent_id
        )

        assert result.success is False
        assert result.reason == FailureReason.PAYMENT_NOT_COMPLETED
        assert result.new_balance == 0
        assert store.idempotency["purchase-1"].status == IdempotencyStatus.PROCESSING

        provider.succeed(created.payment_intent_id)
        later = await orchestrator.confirm_payment(
            "user-1", "purchase-1", created.payment_intent_id
        )
        assert later.success is True
        assert later.new_balance == 1000

    async def test_provider_failure_then_retry(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        created = await _purchase(orchestrator)
        provider.succeed(created.payment_intent_id)
        provider.fail_with = PaymentProviderError("timeout")

        with pytest.raises(PaymentProviderError):
            await orchestrator.confirm_payment("user-1", "purchase-1", created.payment_intent_id)
        assert store.idempotency["purchase-1"].status == IdempotencyStatus.FAILED
        assert store.balances.get("user-1", 0) == 0

        result = await orchestrator.confirm_payment(
            "user-1", "purchase-1", created.payment_intent_id
        )
        assert result.success is True
        assert store.balances["user-1"] == 1000

    async def test_out_of_band_payment(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        """A payment with no local record is recorded under confirm_payment."""
        provider.add_intent(make_intent("pi_ext", amount_minor=2000, user_id="user-1"))

        result = await orchestrator.confirm_payment("user-1", "confirm-ext", "pi_ext")

        assert result.success is True
        assert result.credits_added == 1000
        record = store.idempotency["confirm-ext"]
        assert record.operation == OperationType.CONFIRM_PAYMENT
        assert record.status == IdempotencyStatus.COMPLETED
        assert record.external_payment_ref == "pi_ext"

    async def test_same_payment_under_two_keys_credits_once(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        provider.add_intent(make_intent("pi_ext", amount_minor=2000, user_id="user-1"))

        await orchestrator.confirm_payment("user-1", "key-a", "pi_ext")
        second = await orchestrator.confirm_payment("user-1", "key-b", "pi_ext")

        assert second.success is True
        assert second.is_duplicate is True
        assert store.balances["user-1"] == 1000

    async def test_intent_of_other_user_forbidden(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        provider.add_intent(make_intent("pi_other", user_id="user-2"))

        with pytest.raises(AuthorizationError):
            await orchestrator.confirm_payment("user-1", "steal", "pi_other")
        assert store.balances == {}

    async def test_key_of_other_user_conflicts(
        self, orchestrator: CheckoutOrchestrator
    ) -> None:
        created = await _purchase(orchestrator)
        with pytest.raises(IdempotencyConflictError):
            await orchestrator.confirm_payment("user-2", "purchase-1", created.payment_intent_id)

    async def test_key_bound_to_other_payment_conflicts(
        self, orchestrator: CheckoutOrchestrator, provider
    ) -> None:
        await _purchase(orchestrator)
        provider.add_intent(make_intent("pi_other", user_id="user-1"))
        with pytest.raises(IdempotencyConflictError):
            await orchestrator.confirm_payment("user-1", "purchase-1", "pi_other")

    async def test_unknown_payment(self, orchestrator: CheckoutOrchestrator) -> None:
        with pytest.raises(PaymentProviderError):
            await orchestrator.confirm_payment("user-1", "k", "pi_missing")

    @pytest.mark.parametrize(("key", "intent_id"), [("", "pi_1"), ("k", "")])
    async def test_empty_arguments(
        self, orchestrator: CheckoutOrchestrator, key: str, intent_id: str
    ) -> None:
        with pytest.raises(InvalidArgumentError):
            await orchestrator.confirm_payment("user-1", key, intent_id)
    async def test_metadata_credits_capped_by_amount_received(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        provider.add_intent(
            make_intent("pi_cheap", amount_minor=50, user_id="user-1", credits=1_000_000)
        )

        result = await orchestrator.confirm_payment("user-1", "cheap", "pi_cheap")

        assert result.success is True
        assert result.credits_added == 25
        assert store.balances["user-1"] == 25

    async def test_intent_without_known_owner_forbidden(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        provider.add_intent(
            make_intent("pi_orphan", amount_minor=1000, user_id=None, customer_id="cus_other")
        )

        with pytest.raises(AuthorizationError):
            await orchestrator.confirm_payment("user-1", "k-orphan", "pi_orphan")
        assert store.balances == {}
        assert "k-orphan" not in store.idempotency

    async def test_owner_from_customer_mapping(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        await store.save_customer_ref("user-2", "cus_mapped", None)
        provider.add_intent(
            make_intent("pi_mapped", amount_minor=1000, user_id=None, customer_id="cus_mapped")
        )

        with pytest.raises(AuthorizationError):
            await orchestrator.confirm_payment("user-1", "k-1", "pi_mapped")

        result = await orchestrator.confirm_payment("user-2", "k-2", "pi_mapped")
        assert result.success is True
        assert store.balances == {"user-2": 500}

    async def test_owner_from_provider_customer(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        customer_id = await orchestrator.resolve_customer("user-1")
        provider.add_intent(
            make_intent("pi_cus", amount_minor=1000, user_id=None, customer_id=customer_id)
        )
        store.customers.clear()

        result = await orchestrator.confirm_payment("user-1", "k-cus", "pi_cus")

        assert result.success is True
        assert store.balances["user-1"] == 500


class TestSettlement:
    """Webhook settlement racing with confirm."""

    async def test_webhook_then_confirm(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        created = await _purchase(orchestrator)
        intent = provider.succeed(created.payment_intent_id)

        settled = await orchestrator.settle_payment_intent(intent)
        confirmed = await orchestrator.confirm_payment(
            "user-1", "purchase-1", created.payment_intent_id
        )

        assert settled is not None
        assert settled.new_balance == 1000
        assert confirmed.is_duplicate is True
        assert store.balances["user-1"] == 1000

    async def test_confirm_then_webhook(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        created = await _purchase(orchestrator)
        intent = provider.succeed(created.payment_intent_id)
        await orchestrator.confirm_payment("user-1", "purchase-1", created.payment_intent_id)

        assert await orchestrator.settle_payment_intent(intent) is None
        assert store.balances["user-1"] == 1000

    async def test_settle_finds_record_by_payment_ref(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        created = await _purchase(orchestrator)
        provider.succeed(created.payment_intent_id)
        bare = make_intent(created.payment_intent_id, amount_minor=2000, user_id=None)

        settled = await orchestrator.settle_payment_intent(bare)

        assert settled is not None
        assert settled.credits_added == 1000

    async def test_unpaired_intent_is_ignored(
        self, orchestrator: CheckoutOrchestrator, store
    ) -> None:
        assert await orchestrator.settle_payment_intent(make_intent("pi_unknown")) is None
        assert store.balances == {}

    async def test_unsucceeded_intent_is_ignored(
        self, orchestrator: CheckoutOrchestrator, provider
    ) -> None:
        created = await _purchase(orchestrator)
        intent = provider.intents[created.payment_intent_id]
        assert await orchestrator.settle_payment_intent(intent) is None


class TestCustomersAndCheckout:
    """Provider customer resolution and subscription checkout."""

    async def test_customer_created_once(
        self, orchestrator: CheckoutOrchestrator, store, provider
    ) -> None:
        first = await orchestrator.resolve_customer("user-1", "a@example.com")
        second = await orchestrator.resolve_customer("user-1")

        assert first == second
        assert store.customers["user-1"] == first
        assert provider.calls.count("create_customer") == 1

    async def test_checkout_carries_user_id(
        self, orchestrator: CheckoutOrchestrator, provider
    ) -> None:
        session = await orchestrator.create_checkout_session(
            user_id="user-1",
            price_ref="price_pro_monthly",
            metadata=CheckoutSessionMetadata(user_id="spoofed", plan_tier="pro"),
            success_url="https://app.test/ok",
            cancel_url="https://app.test/cancel",
        )

        [request] = provider.checkout_requests
        assert request.metadata.user_id == "user-1"
        assert request.metadata.plan_tier == "pro"
        assert request.customer_id == session.customer_id
        assert session.url.startswith("https://")

    async def test_checkout_requires_price(self, orchestrator: CheckoutOrchestrator) -> None:
        with pytest.raises(InvalidArgumentError):
            await orchestrator.create_checkout_session(
                "user-1", "", CheckoutSessionMetadata(user_id=None), "https://a", "https://b"
            )
