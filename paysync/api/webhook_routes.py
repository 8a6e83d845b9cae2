"""
Webhook Routes - Provider event ingestion.

NO DICTIONARIES - Verified events are typed WebhookEvent objects.

No bearer auth: the signature header over the raw body is the credential.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from structlog import get_logger

from paysync.api.dependencies import get_store, get_webhook_provider
from paysync.db.store import LedgerStore
from paysync.exceptions import WebhookVerificationError
from paysync.models.api import WebhookAckResponse
from paysync.observability.metrics import metrics
from paysync.services.payment_provider import PaymentProvider
from paysync.services.webhooks import WebhookDispatcher

logger = get_logger(__name__)

router = APIRouter()


@router.post("/v1/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    store: LedgerStore = Depends(get_store),
    provider: PaymentProvider = Depends(get_webhook_provider),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    Unverifiable deliveries are rejected with 400. Verified deliveries are
    always acknowledged; a processing failure is returned as a warning and
    logged with the event id for manual replay.
    """
    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.warning("stripe_webhook_signature_missing")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header",
        )

    payload = await request.body()
    try:
        event = await provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        metrics.record_webhook_event("unverified", "rejected")
        logger.error("stripe_webhook_rejected", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc

    ack = await WebhookDispatcher(store, provider).handle(event)
    return WebhookAckResponse(received=True, event_id=ack.event_id, warning=ack.warning)
