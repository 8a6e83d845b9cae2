"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models. Provider metadata
bags are parsed into the closed metadata records of paysync.models.domain.
"""

from dataclasses import dataclass
from typing import Protocol

from paysync.models.domain import (
    CheckoutSessionMetadata,
    CustomerMetadata,
    PaymentMetadata,
    SubscriptionMetadata,
)


@dataclass(frozen=True)
class PaymentIntentRequest:
    """
    Provider-agnostic payment intent request.

    idempotency_key is forwarded to the provider so a retried create
    returns the same intent.
    """

    amount_minor: int
    currency: str
    description: str
    customer_id: str | None
    customer_email: str | None
    metadata: PaymentMetadata
    idempotency_key: str


@dataclass(frozen=True)
class ProviderPaymentIntent:
    """Payment intent as reported by the provider."""

    payment_intent_id: str
    client_secret: str
    status: str
    amount_minor: int
    amount_received: int
    currency: str
    customer_id: str | None
    metadata: PaymentMetadata
    payment_method_types: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class ProviderCustomer:
    """Customer record at the provider."""

    customer_id: str
    email: str | None
    metadata: CustomerMetadata


@dataclass(frozen=True)
class CheckoutSessionRequest:
    """Subscription checkout session request."""

    customer_id: str
    price_ref: str
    success_url: str
    cancel_url: str
    metadata: CheckoutSessionMetadata


@dataclass(frozen=True)
class CheckoutSessionResult:
    """Hosted checkout session."""

    session_id: str
    url: str
    customer_id: str


@dataclass(frozen=True)
class CheckoutSessionObject:
    """Checkout session carried by a checkout.session.completed event."""

    session_id: str
    mode: str
    subscription_id: str | None
    customer_id: str | None
    client_reference_id: str | None
    metadata: CheckoutSessionMetadata


@dataclass(frozen=True)
class ProviderSubscription:
    """
    Subscription as reported by the provider.

    Period boundaries are unix timestamps. Price fields come from the first
    subscription item.
    """

    subscription_id: str
    customer_id: str | None
    status: str
    metadata: SubscriptionMetadata
    price_id: str | None
    amount_minor: int
    currency: str | None
    interval: str | None
    current_period_start: int | None
    current_period_end: int | None
    created: int | None = None


@dataclass(frozen=True)
class ProviderInvoice:
    """Invoice carried by invoice.* events."""

    invoice_id: str
    subscription_id: str | None
    customer_id: str | None
    amount_paid: int = 0


ProviderObject = (
    CheckoutSessionObject | ProviderSubscription | ProviderInvoice | ProviderPaymentIntent
)


@dataclass(frozen=True)
class WebhookEvent:
    """
    Verified webhook event.

    data_object is None for object types the service does not handle.
    """

    event_id: str
    event_type: str
    data_object: ProviderObject | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Implementations wrap provider SDK errors in PaymentProviderError and bound
    every call with a timeout.
    """

    async def create_customer(
        self, user_id: str, email: str | None, idempotency_key: str
    ) -> ProviderCustomer:
        """
        Create a customer carrying user_id metadata.

        Raises:
            PaymentProviderError: If creation fails or times out
        """
        ...

    async def retrieve_customer(self, customer_id: str) -> ProviderCustomer:
        """Fetch a customer (used to resolve user identity from webhooks)."""
        ...

    async def create_checkout_session(
        self, request: CheckoutSessionRequest
    ) -> CheckoutSessionResult:
        """
        Create a hosted subscription checkout session.

        The metadata is written on both the session and the subscription it creates.
        """
        ...

    async def create_payment_intent(self, request: PaymentIntentRequest) -> ProviderPaymentIntent:
        """
        Create a payment intent.

        Raises:
            PaymentProviderError: If creation fails or times out
        """
        ...

    async def retrieve_payment_intent(self, payment_intent_id: str) -> ProviderPaymentIntent:
        """Fetch the current state of a payment intent."""
        ...

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Fetch the current state of a subscription."""
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse a webhook delivery.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
