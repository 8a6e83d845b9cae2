"""
FastAPI Dependencies - Caller authentication and per-request wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from paysync.config import settings
from paysync.db.session import get_db
from paysync.db.store import SqlLedgerStore
from paysync.exceptions import AuthorizationError
from paysync.models.domain import CallerIdentity
from paysync.services.payment_provider import PaymentProvider
from paysync.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CallerIdentity:
    """
    Verify the bearer JWT and return the caller identity.

    Accepts: Authorization: Bearer {jwt}
    Claims:  sub = user id, role = admin role for privileged callers

    Raises:
        HTTPException 401 if the token is missing, expired or invalid
    """
    if credentials is None:
        raise _unauthorized("Authorization header required")
    if not settings.auth_jwt_secret:
        logger.error("auth_jwt_secret_missing")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication not configured",
        )

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        logger.warning("jwt_token_expired")
        raise _unauthorized("Token expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("jwt_token_invalid", error=str(exc))
        raise _unauthorized("Invalid token") from exc

    user_id = str(payload["sub"])
    if not user_id:
        raise _unauthorized("Token subject is empty")

    return CallerIdentity(
        user_id=user_id,
        is_admin=payload.get("role") == settings.admin_role,
    )


def resolve_target_user(caller: CallerIdentity, requested_user_id: str | None) -> str:
    """
    Writes use the verified identity. A different target user is honoured
    only for admin callers.
    """
    if requested_user_id is None or requested_user_id == caller.user_id:
        return caller.user_id
    if not caller.is_admin:
        logger.warning(
            "target_user_forbidden",
            caller_user_id=caller.user_id,
            requested_user_id=requested_user_id,
        )
        raise AuthorizationError(caller.user_id, f"user:{requested_user_id}")
    return requested_user_id


async def get_store(db: AsyncSession = Depends(get_db)) -> SqlLedgerStore:
    """Ledger store bound to this request's session."""
    return SqlLedgerStore(db)


def get_payment_provider() -> PaymentProvider:
    """
    Stripe provider built from settings.

    Raises:
        HTTPException 503 if Stripe is not configured
    """
    if not settings.stripe_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout_seconds=settings.stripe_timeout_seconds,
    )


def get_webhook_provider() -> PaymentProvider:
    """
    Provider used to verify webhook deliveries.

    Raises:
        HTTPException 503 if the webhook signing secret is not configured
    """
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured",
        )
    return get_payment_provider()
