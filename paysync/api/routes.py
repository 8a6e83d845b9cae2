"""
API Routes - FastAPI endpoints for payments, credits and fees.

NO DICTIONARIES - All requests/responses use Pydantic models.

Every write acts on the verified caller identity. Business outcomes come
back as 200 responses carrying a ``reason``; exceptions are mapped to HTTP
errors by the handlers registered in paysync.main.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from paysync.api.dependencies import (
    get_caller,
    get_payment_provider,
    get_store,
    resolve_target_user,
)
from paysync.config import settings
from paysync.db.session import get_db
from paysync.db.store import LedgerStore
from paysync.models.api import (
    BalanceResponse,
    CheckoutSessionResponse,
    CleanupRequest,
    CleanupResponse,
    ConfirmPaymentRequest,
    ConfirmPaymentResponse,
    ContactFeeRequest,
    ContactFeeResponse,
    CreateCheckoutSessionRequest,
    CreatePaymentIntentRequest,
    HealthResponse,
    PaymentIntentResponse,
    PlacementFeeRefundRequest,
    PlacementFeeRequest,
    PlacementFeeResponse,
)
from paysync.models.domain import (
    CallerIdentity,
    CheckoutSessionMetadata,
    PlacementFeeResult,
)
from paysync.services.checkout import CheckoutOrchestrator
from paysync.services.fees import FeeService
from paysync.services.idempotency import IdempotencyGuard
from paysync.services.ledger import BalanceLedger
from paysync.services.payment_provider import PaymentProvider

logger = get_logger(__name__)

router = APIRouter()


def _placement_response(placement_id: str, result: PlacementFeeResult) -> PlacementFeeResponse:
    fee = result.fee
    return PlacementFeeResponse(
        success=result.success,
        placement_id=placement_id,
        fee_status=fee.fee_status if fee else None,
        amount=fee.amount if fee else None,
        currency=fee.currency if fee else None,
        balance=result.balance,
        already_exists=result.already_exists,
        reason=result.reason,
    )


# ============================================================================
# Payments
# ============================================================================


@router.post("/v1/payments/intents", response_model=PaymentIntentResponse)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    caller: CallerIdentity = Depends(get_caller),
    store: LedgerStore = Depends(get_store),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> PaymentIntentResponse:
    """
    Start a credit purchase.

    Send the same idempotency_key on retries; a completed purchase is
    replayed instead of charged again.
    """
    user_id = resolve_target_user(caller, request.user_id)
    orchestrator = CheckoutOrchestrator(store, provider)
    result = await orchestrator.create_payment_intent(
        user_id=user_id,
        amount_minor=request.amount_minor,
        currency=request.currency,
        idempotency_key=request.idempotency_key,
        credits=request.credits,
        email=request.customer_email,
    )
    return PaymentIntentResponse(
        payment_intent_id=result.payment_intent_id,
        client_secret=result.client_secret,
        status=result.status,
        amount_minor=result.amount_minor,
        currency=result.currency,
        credits=result.credits,
        idempotency_key=result.idempotency_key,
        is_duplicate=result.is_duplicate,
        publishable_key=settings.stripe_publishable_key or None,
    )


@router.post("/v1/payments/checkout-sessions", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    request: CreateCheckoutSessionRequest,
    caller: CallerIdentity = Depends(get_caller),
    store: LedgerStore = Depends(get_store),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> CheckoutSessionResponse:
    """Create a hosted subscription checkout for the caller."""
    orchestrator = CheckoutOrchestrator(store, provider)
    session = await orchestrator.create_checkout_session(
        user_id=caller.user_id,
        price_ref=request.price_ref,
        metadata=CheckoutSessionMetadata(
            user_id=caller.user_id,
            plan_name=request.plan_name,
            plan_tier=request.plan_tier,
            user_type=request.user_type,
        ),
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        email=request.customer_email,
    )
    return CheckoutSessionResponse(
        session_id=session.session_id,
        url=session.url,
        customer_id=session.customer_id,
    )


@router.post("/v1/payments/confirm", response_model=ConfirmPaymentResponse)
async def confirm_payment(
    request: ConfirmPaymentRequest,
    caller: CallerIdentity = Depends(get_caller),
    store: LedgerStore = Depends(get_store),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> ConfirmPaymentResponse:
    """
    Confirm a payment after the provider redirect.

    Returns success=false with reason payment_not_completed while the
    payment is still processing; call again later with the same key.
    """
    orchestrator = CheckoutOrchestrator(store, provider)
    result = await orchestrator.confirm_payment(
        user_id=caller.user_id,
        idempotency_key=request.idempotency_key,
        payment_intent_id=request.payment_intent_id,
    )
    return ConfirmPaymentResponse(
        success=result.success,
        new_balance=result.new_balance,
        credits_added=result.credits_added,
        is_duplicate=result.is_duplicate,
        reason=result.reason,
    )


@router.get("/v1/credits/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: str | None = None,
    caller: CallerIdentity = Depends(get_caller),
    store: LedgerStore = Depends(get_store),
) -> BalanceResponse:
    """Current credit balance of the caller (admins may pass user_id)."""
    target = resolve_target_user(caller, user_id)
    balance = await BalanceLedger(store).get_balance(target)
    return BalanceResponse(user_id=target, balance=balance)


# ============================================================================
# Fees
# ============================================================================


@router.post("/v1/fees/contact", response_model=ContactFeeResponse)
async def charge_contact_fee(
    request: ContactFeeRequest,
    caller: CallerIdentity = Depends(get_caller),
    store: LedgerStore = Depends(get_store),
) -> ContactFeeResponse:
    """Charge the caller once for contacting a subject."""
    result = await FeeService(store).charge_contact_fee(
        payer_id=caller.user_id,
        subject_id=request.subject_id,
        credits=request.credits,
        message=request.message,
    )
    return ContactFeeResponse(
        success=result.success,
        already_contacted=result.already_contacted,
        credits_remaining=result.credits_remaining,
        reason=result.reason,
    )


@router.post("/v1/fees/placement", response_model=PlacementFeeResponse)
async def hold_placement_fee(
    request: PlacementFeeRequest,
    caller: CallerIdentity = Depends(get_caller),
    store: LedgerStore = Depends(get_store),
) -> PlacementFeeResponse:
    """Hold a placement fee in escrow."""
    result = await FeeService(store).hold_placement_fee(
        payer_id=caller.user_id,
        placement_id=request.placement_id,
        amount=request.amount,
        currency=request.currency,
        notes=request.notes,
    )
    return _placement_response(request.placement_id, result)


@router.post("/v1/fees/placement/{placement_id}/release", response_model=PlacementFeeResponse)
async def release_placement_fee(
    placement_id: str,
    caller: CallerIdentity = Depends(get_caller),
    store: LedgerStore = Depends(get_store),
) -> PlacementFeeResponse:
    """Release an escrowed placement fee."""
    result = await FeeService(store).release_placement_fee(caller.user_id, placement_id)
    return _placement_response(placement_id, result)


@router.post("/v1/fees/placement/{placement_id}/refund", response_model=PlacementFeeResponse)
async def refund_placement_fee(
    placement_id: str,
    request: PlacementFeeRefundRequest | None = None,
    caller: CallerIdentity = Depends(get_caller),
    store: LedgerStore = Depends(get_store),
) -> PlacementFeeResponse:
    """Return an escrowed placement fee to the payer's credits."""
    result = await FeeService(store).refund_placement_fee(
        caller.user_id, placement_id, reason=request.reason if request else None
    )
    return _placement_response(placement_id, result)


# ============================================================================
# Maintenance
# ============================================================================


@router.post("/v1/idempotency/cleanup", response_model=CleanupResponse)
async def cleanup_idempotency_records(
    request: CleanupRequest,
    caller: CallerIdentity = Depends(get_caller),
    store: LedgerStore = Depends(get_store),
) -> CleanupResponse:
    """
    Delete idempotency records older than max_age_hours (1-168).

    Admins sweep all users; everyone else only their own records.
    """
    deleted = await IdempotencyGuard(store).cleanup_expired(caller, request.max_age_hours)
    return CleanupResponse(
        deleted=deleted,
        max_age_hours=request.max_age_hours,
        scoped_to_user=None if caller.is_admin else caller.user_id,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """Health check endpoint with database connectivity probe."""
    try:
        await db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        db_status = "disconnected"

    return HealthResponse(
        status="healthy" if db_status == "connected" else "degraded",
        database=db_status,
        timestamp=datetime.now(UTC).isoformat(),
    )
