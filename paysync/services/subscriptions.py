"""
Subscription Reconciler - Converges local subscription rows on provider state.

NO DICTIONARIES - Provider subscriptions are mapped onto SubscriptionFields.

Events may arrive duplicated and out of order. Every event is applied as a
single upsert keyed by the external subscription id, so the row is never
duplicated and the last applied event wins. The owning user_id is written
once and never reassigned.
"""

from datetime import UTC, date, datetime

from structlog import get_logger

from paysync.db.store import LedgerStore
from paysync.exceptions import InvalidArgumentError
from paysync.models.api import SubscriptionStatus
from paysync.models.domain import SubscriptionData, SubscriptionFields
from paysync.observability.metrics import metrics
from paysync.services.payment_provider import ProviderSubscription

logger = get_logger(__name__)

DEFAULT_BILLING_PERIOD = "month"
DEFAULT_PLAN_TYPE = "subscription"

# Provider statuses outside the local enum collapse onto the nearest state.
_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}

_PLAN_KEYWORDS = ("premium", "pro", "basic")


def map_provider_status(raw_status: str) -> SubscriptionStatus:
    status = _STATUS_MAP.get(raw_status)
    if status is None:
        logger.warning("subscription_status_unknown", provider_status=raw_status)
        return SubscriptionStatus.PAST_DUE
    return status


def infer_plan_type(plan_tier: str | None, price_id: str | None) -> str:
    """Plan tier from metadata, else a tier keyword found in the price id."""
    if plan_tier:
        return plan_tier
    if price_id:
        lowered = price_id.lower()
        for keyword in _PLAN_KEYWORDS:
            if keyword in lowered:
                return keyword
    return DEFAULT_PLAN_TYPE


def timestamp_to_date(timestamp: int | None) -> date | None:
    """Truncate a unix timestamp to its UTC calendar date."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC).date()


def fields_from_provider(
    subscription: ProviderSubscription, default_currency: str
) -> SubscriptionFields:
    metadata = subscription.metadata
    return SubscriptionFields(
        external_customer_id=subscription.customer_id,
        status=map_provider_status(subscription.status),
        plan_name=metadata.plan_name or metadata.plan_tier or subscription.price_id,
        plan_type=infer_plan_type(metadata.plan_tier, subscription.price_id),
        user_type=metadata.user_type,
        amount=subscription.amount_minor,
        currency=(subscription.currency or default_currency).upper(),
        billing_period=subscription.interval or DEFAULT_BILLING_PERIOD,
        start_date=timestamp_to_date(subscription.current_period_start or subscription.created),
        end_date=timestamp_to_date(subscription.current_period_end),
    )


class SubscriptionReconciler:
    """Applies subscription lifecycle events to the subscriptions table."""

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    async def reconcile(
        self, external_subscription_id: str, user_id: str, fields: SubscriptionFields
    ) -> SubscriptionData:
        """
        Upsert the subscription row.

        Replaying the same event yields the same row. When the stored owner
        differs from the incoming user_id, the stored owner is kept.
        """
        if not external_subscription_id:
            raise InvalidArgumentError("external_subscription_id", "must not be empty")
        if not user_id:
            raise InvalidArgumentError("user_id", "must not be empty")

        async with self.store.transaction():
            data = await self.store.upsert_subscription(external_subscription_id, user_id, fields)

        if data.user_id != user_id:
            logger.warning(
                "subscription_owner_mismatch",
                external_subscription_id=external_subscription_id,
                stored_user_id=data.user_id,
                event_user_id=user_id,
            )

        metrics.record_subscription_reconcile(data.status.value)
        logger.info(
            "subscription_reconciled",
            external_subscription_id=external_subscription_id,
            user_id=data.user_id,
            status=data.status.value,
            plan_name=data.plan_name,
            end_date=str(data.end_date) if data.end_date else None,
        )
        return data

    async def reconcile_from_provider(
        self, subscription: ProviderSubscription, user_id: str, default_currency: str
    ) -> SubscriptionData:
        fields = fields_from_provider(subscription, default_currency)
        return await self.reconcile(subscription.subscription_id, user_id, fields)

    async def mark_canceled(self, external_subscription_id: str) -> bool:
        """
        Set status to canceled. Returns False when no row exists.

        A later created/updated event for the same subscription re-inserts
        it through reconcile.
        """
        if not external_subscription_id:
            raise InvalidArgumentError("external_subscription_id", "must not be empty")

        async with self.store.transaction():
            updated = await self.store.update_subscription_status(
                external_subscription_id, SubscriptionStatus.CANCELED
            )

        if updated == 0:
            logger.warning(
                "subscription_cancel_unknown",
                external_subscription_id=external_subscription_id,
            )
            return False

        metrics.record_subscription_reconcile(SubscriptionStatus.CANCELED.value)
        logger.info("subscription_canceled", external_subscription_id=external_subscription_id)
        return True
