"""
Webhook Event Dispatcher - Routes verified provider events to reconcilers.

NO DICTIONARIES - Events arrive as typed WebhookEvent objects.

Delivery policy: a bad signature is rejected before dispatch. Once verified,
every event is acknowledged; a failure while handling it is logged with the
event id and returned as a warning so the provider does not retry a
business error forever. Handlers rely on natural idempotency (subscription
upsert, unique payment ref, guarded settlement), so redeliveries are safe.
"""

from dataclasses import dataclass
from typing import Any

from structlog import get_logger

from paysync.config import settings
from paysync.db.store import LedgerStore
from paysync.models.domain import PaymentRecordData
from paysync.observability.logging import log_context
from paysync.observability.metrics import metrics
from paysync.observability.tracing import trace_operation
from paysync.services.checkout import CheckoutOrchestrator
from paysync.services.payment_provider import (
    CheckoutSessionObject,
    PaymentProvider,
    ProviderInvoice,
    ProviderPaymentIntent,
    ProviderSubscription,
    WebhookEvent,
)
from paysync.services.subscriptions import SubscriptionReconciler

logger = get_logger(__name__)

DEFAULT_PAYMENT_METHOD = "card"


@dataclass(frozen=True)
class WebhookAck:
    """Acknowledgement returned to the provider (always HTTP 200)."""

    event_id: str
    outcome: str
    warning: str | None = None


class WebhookDispatcher:
    """
    Classifies webhook events and routes them.

    checkout.session.completed      retrieve subscription, reconcile
    customer.subscription.created   reconcile
    customer.subscription.updated   reconcile
    customer.subscription.deleted   mark canceled
    invoice.paid                    retrieve subscription, reconcile
    invoice.payment_failed          log only
    payment_intent.succeeded        record payment, settle pending purchase
    """

    def __init__(
        self,
        store: LedgerStore,
        provider: PaymentProvider,
        default_currency: str | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.reconciler = SubscriptionReconciler(store)
        self.orchestrator = CheckoutOrchestrator(store, provider)
        self.default_currency = default_currency or settings.default_currency
        self._handlers = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "payment_intent.succeeded": self._on_payment_intent_succeeded,
        }

    async def handle(self, event: WebhookEvent) -> WebhookAck:
        """Dispatch and convert any handler failure into an acknowledged warning."""
        with (
            log_context(event_id=event.event_id, event_type=event.event_type),
            trace_operation("webhook", event_type=event.event_type) as span,
        ):
            try:
                outcome = await self.dispatch(event)
            except Exception as exc:
                span.set_attribute("paysync.outcome", "error")
                metrics.record_webhook_event(event.event_type, "error")
                metrics.record_error(type(exc).__name__, "webhook_dispatch")
                logger.exception(
                    "webhook_dispatch_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                return WebhookAck(
                    event_id=event.event_id,
                    outcome="error",
                    warning=f"{type(exc).__name__}: {exc}",
                )

            span.set_attribute("paysync.outcome", outcome)
            metrics.record_webhook_event(event.event_type, outcome)
            logger.info("webhook_processed", outcome=outcome)
            return WebhookAck(event_id=event.event_id, outcome=outcome)

    async def dispatch(self, event: WebhookEvent) -> str:
        """Route one event. Returns the outcome label."""
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("webhook_unhandled")
            return "unhandled"
        return await handler(event.data_object)

    # ========================================================================
    # Handlers
    # ========================================================================

    async def _on_checkout_completed(self, obj: Any) -> str:
        if not isinstance(obj, CheckoutSessionObject):
            return self._unexpected(obj)
        if obj.mode != "subscription" or obj.subscription_id is None:
            logger.info("checkout_session_not_subscription", session_id=obj.session_id)
            return "ignored"

        subscription = await self.provider.retrieve_subscription(obj.subscription_id)
        user_id = await self._resolve_user(
            (obj.metadata.user_id, subscription.metadata.user_id, obj.client_reference_id),
            obj.customer_id or subscription.customer_id,
        )
        if user_id is None:
            return self._dropped(subscription_id=obj.subscription_id)

        await self.reconciler.reconcile_from_provider(
            subscription, user_id, self.default_currency
        )
        return "processed"

    async def _on_subscription_changed(self, obj: Any) -> str:
        if not isinstance(obj, ProviderSubscription):
            return self._unexpected(obj)

        user_id = await self._resolve_user((obj.metadata.user_id,), obj.customer_id)
        if user_id is None:
            return self._dropped(subscription_id=obj.subscription_id)

        await self.reconciler.reconcile_from_provider(obj, user_id, self.default_currency)
        return "processed"

    async def _on_subscription_deleted(self, obj: Any) -> str:
        if not isinstance(obj, ProviderSubscription):
            return self._unexpected(obj)
        canceled = await self.reconciler.mark_canceled(obj.subscription_id)
        return "processed" if canceled else "ignored"

    async def _on_invoice_paid(self, obj: Any) -> str:
        if not isinstance(obj, ProviderInvoice):
            return self._unexpected(obj)
        if obj.subscription_id is None:
            logger.info("invoice_without_subscription", invoice_id=obj.invoice_id)
            return "ignored"

        subscription = await self.provider.retrieve_subscription(obj.subscription_id)
        user_id = await self._resolve_user(
            (subscription.metadata.user_id,), subscription.customer_id or obj.customer_id
        )
        if user_id is None:
            return self._dropped(subscription_id=obj.subscription_id)

        await self.reconciler.reconcile_from_provider(
            subscription, user_id, self.default_currency
        )
        return "processed"

    async def _on_invoice_payment_failed(self, obj: Any) -> str:
        if not isinstance(obj, ProviderInvoice):
            return self._unexpected(obj)
        # Status follows through the customer.subscription.updated event.
        logger.warning(
            "invoice_payment_failed",
            invoice_id=obj.invoice_id,
            subscription_id=obj.subscription_id,
            customer_id=obj.customer_id,
        )
        return "logged"

    async def _on_payment_intent_succeeded(self, obj: Any) -> str:
        if not isinstance(obj, ProviderPaymentIntent):
            return self._unexpected(obj)

        user_id = await self._resolve_user((obj.metadata.user_id,), obj.customer_id)
        if user_id is not None:
            method = obj.payment_method_types[0] if obj.payment_method_types else None
            async with self.store.transaction():
                inserted = await self.store.insert_payment(
                    PaymentRecordData(
                        user_id=user_id,
                        external_payment_ref=obj.payment_intent_id,
                        amount=obj.amount_received or obj.amount_minor,
                        currency=obj.currency,
                        status=obj.status,
                        payment_method=method or DEFAULT_PAYMENT_METHOD,
                    )
                )
            logger.info(
                "payment_recorded",
                payment_intent_id=obj.payment_intent_id,
                user_id=user_id,
                duplicate=not inserted,
            )
        else:
            logger.warning("payment_user_unresolved", payment_intent_id=obj.payment_intent_id)

        settled = await self.orchestrator.settle_payment_intent(obj)
        if settled is not None:
            logger.info(
                "payment_settled_from_webhook",
                payment_intent_id=obj.payment_intent_id,
                credits_added=settled.credits_added,
            )
        return "processed" if user_id is not None or settled is not None else "dropped"

    # ========================================================================
    # Identity resolution
    # ========================================================================

    async def _resolve_user(
        self, candidates: tuple[str | None, ...], customer_id: str | None
    ) -> str | None:
        """
        Object metadata first, then the provider customer's metadata, then
        the local customer mapping.
        """
        for candidate in candidates:
            if candidate:
                return candidate
        return await self.orchestrator.find_customer_owner(customer_id)

    @staticmethod
    def _unexpected(obj: Any) -> str:
        logger.warning("webhook_unexpected_object", object_type=type(obj).__name__)
        return "ignored"

    @staticmethod
    def _dropped(**context: Any) -> str:
        logger.warning("webhook_user_unresolved", **context)
        return "dropped"
