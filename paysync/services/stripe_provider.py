"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - Stripe objects are parsed into typed provider models.

The secret key is passed per request (api_key=) instead of being assigned
to the SDK global, and every blocking SDK call runs in a worker thread
under a timeout.
"""

import asyncio
import json
from collections.abc import Callable
from typing import Any

import stripe
from structlog import get_logger

from paysync.exceptions import PaymentProviderError, WebhookVerificationError
from paysync.models.domain import (
    CheckoutSessionMetadata,
    CustomerMetadata,
    PaymentMetadata,
    SubscriptionMetadata,
)
from paysync.observability.metrics import track_provider_call
from paysync.services.payment_provider import (
    CheckoutSessionObject,
    CheckoutSessionRequest,
    CheckoutSessionResult,
    PaymentIntentRequest,
    ProviderCustomer,
    ProviderInvoice,
    ProviderObject,
    ProviderPaymentIntent,
    ProviderSubscription,
    WebhookEvent,
)

logger = get_logger(__name__)


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a StripeObject or a plain dict."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, key, default)
    return default if value is None else value


def _metadata(obj: Any) -> dict[str, Any]:
    raw = _field(obj, "metadata")
    if not raw:
        return {}
    return {key: raw[key] for key in raw.keys()}


def _object_id(value: Any) -> str | None:
    """Stripe fields may hold an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _field(value, "id")


def _first_item(subscription: Any) -> Any:
    items = _field(subscription, "items")
    data = _field(items, "data") or []
    return data[0] if len(data) > 0 else None


def parse_payment_intent(obj: Any) -> ProviderPaymentIntent:
    currency = _field(obj, "currency", "")
    return ProviderPaymentIntent(
        payment_intent_id=_field(obj, "id"),
        client_secret=_field(obj, "client_secret", ""),
        status=_field(obj, "status", ""),
        amount_minor=int(_field(obj, "amount", 0)),
        amount_received=int(_field(obj, "amount_received", 0)),
        currency=currency.upper(),
        customer_id=_object_id(_field(obj, "customer")),
        metadata=PaymentMetadata.from_mapping(_metadata(obj)),
        payment_method_types=tuple(_field(obj, "payment_method_types", ())),
    )


def parse_subscription(obj: Any) -> ProviderSubscription:
    """
    Parse a subscription.

    Newer API versions moved period boundaries onto subscription items, so
    those are the fallback when the subscription itself has none.
    """
    item = _first_item(obj)
    price = _field(item, "price")
    recurring = _field(price, "recurring")
    currency = _field(price, "currency") or _field(obj, "currency")
    return ProviderSubscription(
        subscription_id=_field(obj, "id"),
        customer_id=_object_id(_field(obj, "customer")),
        status=_field(obj, "status", ""),
        metadata=SubscriptionMetadata.from_mapping(_metadata(obj)),
        price_id=_field(price, "id"),
        amount_minor=int(_field(price, "unit_amount", 0)),
        currency=currency.upper() if currency else None,
        interval=_field(recurring, "interval"),
        current_period_start=_field(obj, "current_period_start")
        or _field(item, "current_period_start"),
        current_period_end=_field(obj, "current_period_end")
        or _field(item, "current_period_end"),
        created=_field(obj, "created"),
    )


def parse_invoice(obj: Any) -> ProviderInvoice:
    subscription_id = _object_id(_field(obj, "subscription"))
    if subscription_id is None:
        details = _field(_field(obj, "parent"), "subscription_details")
        subscription_id = _object_id(_field(details, "subscription"))
    return ProviderInvoice(
        invoice_id=_field(obj, "id"),
        subscription_id=subscription_id,
        customer_id=_object_id(_field(obj, "customer")),
        amount_paid=int(_field(obj, "amount_paid", 0)),
    )


def parse_checkout_session(obj: Any) -> CheckoutSessionObject:
    return CheckoutSessionObject(
        session_id=_field(obj, "id"),
        mode=_field(obj, "mode", ""),
        subscription_id=_object_id(_field(obj, "subscription")),
        customer_id=_object_id(_field(obj, "customer")),
        client_reference_id=_field(obj, "client_reference_id"),
        metadata=CheckoutSessionMetadata.from_mapping(_metadata(obj)),
    )


def parse_customer(obj: Any) -> ProviderCustomer:
    return ProviderCustomer(
        customer_id=_field(obj, "id"),
        email=_field(obj, "email"),
        metadata=CustomerMetadata.from_mapping(_metadata(obj)),
    )


_PARSERS: dict[str, Callable[[Any], ProviderObject]] = {
    "checkout.session": parse_checkout_session,
    "subscription": parse_subscription,
    "invoice": parse_invoice,
    "payment_intent": parse_payment_intent,
}


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(self, api_key: str, webhook_secret: str, timeout_seconds: float = 15.0) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            timeout_seconds: Upper bound for a single Stripe API call
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        with track_provider_call(operation):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs),
                    timeout=self.timeout_seconds,
                )
            except TimeoutError as exc:
                logger.error(
                    "stripe_call_timeout",
                    operation=operation,
                    timeout_seconds=self.timeout_seconds,
                )
                raise PaymentProviderError(
                    f"Stripe {operation} timed out after {self.timeout_seconds}s"
                ) from exc
            except stripe.StripeError as exc:
                logger.error(
                    "stripe_call_failed",
                    operation=operation,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                raise PaymentProviderError(f"Stripe {operation} failed: {exc}") from exc

    async def create_customer(
        self, user_id: str, email: str | None, idempotency_key: str
    ) -> ProviderCustomer:
        params: dict[str, Any] = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            idempotency_key=idempotency_key,
            **params,
        )
        logger.info("stripe_customer_created", customer_id=_field(customer, "id"), user_id=user_id)
        return parse_customer(customer)

    async def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        customer = await self._call("retrieve_customer", stripe.Customer.retrieve, customer_id)
        return parse_customer(customer)

    async def create_checkout_session(
        self, request: CheckoutSessionRequest
    ) -> CheckoutSessionResult:
        metadata = request.metadata.to_mapping()
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            mode="subscription",
            customer=request.customer_id,
            line_items=[{"price": request.price_ref, "quantity": 1}],
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            client_reference_id=request.metadata.user_id,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
        logger.info(
            "stripe_checkout_session_created",
            session_id=_field(session, "id"),
            customer_id=request.customer_id,
        )
        return CheckoutSessionResult(
            session_id=_field(session, "id"),
            url=_field(session, "url", ""),
            customer_id=request.customer_id,
        )

    async def create_payment_intent(self, request: PaymentIntentRequest) -> ProviderPaymentIntent:
        """
        Create a Stripe PaymentIntent.

        The local idempotency key doubles as Stripe's Idempotency-Key so a
        retried create after a timeout returns the original intent.
        """
        params: dict[str, Any] = {
            "amount": request.amount_minor,
            "currency": request.currency.lower(),
            "description": request.description,
            "metadata": request.metadata.to_mapping(),
            "automatic_payment_methods": {"enabled": True},
        }
        if request.customer_id:
            params["customer"] = request.customer_id
        if request.customer_email:
            params["receipt_email"] = request.customer_email

        logger.info(
            "creating_stripe_payment_intent",
            amount_minor=request.amount_minor,
            currency=request.currency,
            idempotency_key=request.idempotency_key,
        )
        payment_intent = await self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            idempotency_key=request.idempotency_key,
            **params,
        )
        parsed = parse_payment_intent(payment_intent)
        logger.info(
            "stripe_payment_intent_created",
            payment_intent_id=parsed.payment_intent_id,
            status=parsed.status,
        )
        return parsed

    async def retrieve_payment_intent(self, payment_intent_id: str) -> ProviderPaymentIntent:
        payment_intent = await self._call(
            "retrieve_payment_intent", stripe.PaymentIntent.retrieve, payment_intent_id
        )
        return parse_payment_intent(payment_intent)

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        subscription = await self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
        )
        return parse_subscription(subscription)

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify a Stripe webhook signature and parse the event.

        Raises:
            WebhookVerificationError: Bad signature or unparseable payload
        """
        try:
            stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.warning("stripe_webhook_payload_invalid", error=str(exc))
            raise WebhookVerificationError(f"Invalid webhook payload: {exc}") from exc

        body = json.loads(payload)
        data_object = _field(_field(body, "data"), "object")
        object_type = _field(data_object, "object", "")
        parser = _PARSERS.get(object_type)

        event = WebhookEvent(
            event_id=_field(body, "id", ""),
            event_type=_field(body, "type", ""),
            data_object=parser(data_object) if parser is not None else None,
        )
        logger.info(
            "stripe_webhook_verified",
            event_id=event.event_id,
            event_type=event.event_type,
            object_type=object_type,
        )
        return event
