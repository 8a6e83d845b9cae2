"""
Tests for SubscriptionReconciler and provider field mapping.
"""

from datetime import date

import pytest

from paysync.exceptions import InvalidArgumentError
from paysync.models.api import SubscriptionStatus
from paysync.services.subscriptions import (
    SubscriptionReconciler,
    fields_from_provider,
    infer_plan_type,
    map_provider_status,
    timestamp_to_date,
)

from conftest import make_subscription


class TestStatusMapping:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.TRIALING),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("unpaid", SubscriptionStatus.PAST_DUE),
            ("incomplete", SubscriptionStatus.PAST_DUE),
            ("paused", SubscriptionStatus.PAUSED),
            ("canceled", SubscriptionStatus.CANCELED),
            ("incomplete_expired", SubscriptionStatus.EXPIRED),
        ],
    )
    def test_known_statuses(self, raw: str, expected: SubscriptionStatus) -> None:
        assert map_provider_status(raw) == expected

    def test_unknown_status_is_past_due(self) -> None:
        assert map_provider_status("something_new") == SubscriptionStatus.PAST_DUE


class TestFieldMapping:
    def test_plan_type_from_tier(self) -> None:
        assert infer_plan_type("enterprise", "price_basic") == "enterprise"

    def test_plan_type_from_price_id(self) -> None:
        assert infer_plan_type(None, "price_Premium_yearly") == "premium"

    def test_plan_type_default(self) -> None:
        assert infer_plan_type(None, None) == "subscription"

    def test_timestamp_to_utc_date(self) -> None:
        assert timestamp_to_date(0) == date(1970, 1, 1)
        assert timestamp_to_date(None) is None

    def test_fields_from_provider(self) -> None:
        fields = fields_from_provider(make_subscription(), "EUR")

        assert fields.status == SubscriptionStatus.ACTIVE
        assert fields.currency == "USD"
        assert fields.amount == 1999
        assert fields.plan_name == "Pro Monthly"
        assert fields.plan_type == "pro"
        assert fields.billing_period == "month"
        assert fields.start_date == timestamp_to_date(1_760_000_000)
        assert fields.end_date == timestamp_to_date(1_762_592_000)

    def test_missing_currency_uses_default(self) -> None:
        fields = fields_from_provider(make_subscription(currency=None), "eur")
        assert fields.currency == "EUR"


class TestReconcile:
    """Upsert convergence."""

    async def test_first_event_inserts(self, reconciler: SubscriptionReconciler, store) -> None:
        data = await reconciler.reconcile_from_provider(make_subscription(), "user-1", "USD")

        assert data.user_id == "user-1"
        assert data.status == SubscriptionStatus.ACTIVE
        assert list(store.subscriptions) == ["sub_123"]

    async def test_replay_converges_to_one_row(
        self, reconciler: SubscriptionReconciler, store
    ) -> None:
        sub = make_subscription()
        first = await reconciler.reconcile_from_provider(sub, "user-1", "USD")
        second = await reconciler.reconcile_from_provider(sub, "user-1", "USD")

        assert len(store.subscriptions) == 1
        assert (first.status, first.end_date) == (second.status, second.end_date)

    async def test_last_write_wins(self, reconciler: SubscriptionReconciler, store) -> None:
        await reconciler.reconcile_from_provider(
            make_subscription(status="past_due"), "user-1", "USD"
        )
        await reconciler.reconcile_from_provider(
            make_subscription(status="active"), "user-1", "USD"
        )

        assert store.subscriptions["sub_123"].status == SubscriptionStatus.ACTIVE

    async def test_owner_is_never_reassigned(
        self, reconciler: SubscriptionReconciler, store
    ) -> None:
        await reconciler.reconcile_from_provider(make_subscription(), "user-1", "USD")
        data = await reconciler.reconcile_from_provider(make_subscription(), "user-2", "USD")

        assert data.user_id == "user-1"
        assert store.subscriptions["sub_123"].user_id == "user-1"

    async def test_mark_canceled(self, reconciler: SubscriptionReconciler, store) -> None:
        await reconciler.reconcile_from_provider(make_subscription(), "user-1", "USD")

        assert await reconciler.mark_canceled("sub_123") is True
        assert store.subscriptions["sub_123"].status == SubscriptionStatus.CANCELED

    async def test_mark_canceled_unknown(self, reconciler: SubscriptionReconciler) -> None:
        assert await reconciler.mark_canceled("sub_missing") is False

    async def test_update_after_cancel_applies(
        self, reconciler: SubscriptionReconciler, store
    ) -> None:
        await reconciler.reconcile_from_provider(make_subscription(), "user-1", "USD")
        await reconciler.mark_canceled("sub_123")
        await reconciler.reconcile_from_provider(
            make_subscription(status="active"), "user-1", "USD"
        )

        assert store.subscriptions["sub_123"].status == SubscriptionStatus.ACTIVE

    @pytest.mark.parametrize(("sub_id", "user_id"), [("", "user-1"), ("sub_1", "")])
    async def test_invalid_arguments(
        self, reconciler: SubscriptionReconciler, sub_id: str, user_id: str
    ) -> None:
        fields = fields_from_provider(make_subscription(), "USD")
        with pytest.raises(InvalidArgumentError):
            await reconciler.reconcile(sub_id, user_id, fields)
