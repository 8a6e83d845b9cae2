"""
Idempotency Guard - Durable operation ledger for exactly-once effects.

NO DICTIONARIES - Outcomes are IdempotencyCheck dataclasses; the cached
result is the only opaque payload and is returned verbatim on replay.

Record lifecycle:
    pending -> processing (provider payment attached) -> completed | failed
    failed  -> pending (re-claimed by a retry with the same key)
"""

import hashlib
import json
from datetime import UTC, datetime, timedelta
from typing import Any

from structlog import get_logger

from paysync.db.store import LedgerStore
from paysync.exceptions import IdempotencyConflictError, InvalidArgumentError
from paysync.models.api import IdempotencyStatus, OperationType
from paysync.models.domain import CallerIdentity, IdempotencyCheck, IdempotencyRecordData
from paysync.observability.metrics import metrics

logger = get_logger(__name__)

KEY_PREFIX = "idem_"
MAX_KEY_LENGTH = 255
MIN_RETENTION_HOURS = 1
MAX_RETENTION_HOURS = 168


def derive_key(
    user_id: str,
    operation: OperationType,
    amount: int,
    context: dict[str, Any] | None = None,
) -> str:
    """
    Derive a deterministic key from the operation content.

    No wall-clock input: the same logical operation always maps to the same key.
    """
    canonical = json.dumps(
        {
            "user_id": user_id,
            "operation": operation.value,
            "amount": amount,
            "context": context or {},
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return KEY_PREFIX + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyGuard:
    """
    Guards an economic operation with a durable key.

    The guard is advisory for in-flight records: concurrent first calls may
    both proceed, and the ledger's external-ref uniqueness decides which one
    applies its effect.
    """

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    async def ensure_idempotent(
        self,
        user_id: str,
        operation: OperationType,
        amount: int,
        context: dict[str, Any] | None = None,
        key: str | None = None,
    ) -> IdempotencyCheck:
        """
        Claim or look up the record for an operation.

        Raises:
            InvalidArgumentError: Empty user, oversize key or bad amount
            IdempotencyConflictError: Key already used by another user, operation or amount
        """
        if not user_id:
            raise InvalidArgumentError("user_id", "must not be empty")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidArgumentError("amount", "must be a non-negative integer")
        if key is not None and not 0 < len(key) <= MAX_KEY_LENGTH:
            raise InvalidArgumentError(
                "idempotency_key", f"must be 1-{MAX_KEY_LENGTH} characters"
            )

        resolved_key = key or derive_key(user_id, operation, amount, context)

        async with self.store.transaction():
            inserted = await self.store.insert_idempotency_record(
                resolved_key, user_id, operation, amount
            )
            if inserted:
                metrics.record_idempotency_check(operation.value, "new")
                logger.info(
                    "idempotency_record_created",
                    key=resolved_key,
                    user_id=user_id,
                    operation=operation.value,
                )
                return IdempotencyCheck(
                    is_duplicate=False, key=resolved_key, status=IdempotencyStatus.PENDING
                )

            record = await self.store.get_idempotency_record(resolved_key)
            if record is None:
                # Swept between the insert attempt and the read; claim again.
                await self.store.insert_idempotency_record(
                    resolved_key, user_id, operation, amount
                )
                return IdempotencyCheck(
                    is_duplicate=False, key=resolved_key, status=IdempotencyStatus.PENDING
                )

            self._check_ownership(record, user_id, operation, amount)

            if record.status == IdempotencyStatus.COMPLETED:
                metrics.record_idempotency_check(operation.value, "replay")
                logger.info(
                    "idempotency_replay",
                    key=resolved_key,
                    user_id=user_id,
                    operation=operation.value,
                )
                return IdempotencyCheck(
                    is_duplicate=True,
                    key=resolved_key,
                    status=record.status,
                    cached_result=record.result,
                    external_payment_ref=record.external_payment_ref,
                )

            if record.status == IdempotencyStatus.FAILED:
                reclaimed = await self.store.reclaim_failed_idempotency_record(resolved_key)
                metrics.record_idempotency_check(operation.value, "reclaimed")
                logger.info(
                    "idempotency_record_reclaimed",
                    key=resolved_key,
                    won=reclaimed,
                    previous_error=record.error_message,
                )
                return IdempotencyCheck(
                    is_duplicate=False,
                    key=resolved_key,
                    status=IdempotencyStatus.PENDING,
                    external_payment_ref=record.external_payment_ref,
                )

            metrics.record_idempotency_check(operation.value, "in_flight")
            return IdempotencyCheck(
                is_duplicate=False,
                key=resolved_key,
                status=record.status,
                external_payment_ref=record.external_payment_ref,
            )

    async def get_record(self, key: str) -> IdempotencyRecordData | None:
        return await self.store.get_idempotency_record(key)

    async def attach_payment(self, key: str, external_ref: str) -> bool:
        """Record the provider payment id and move the record to processing."""
        async with self.store.transaction():
            attached = await self.store.attach_payment_ref(key, external_ref)
        logger.info(
            "idempotency_payment_attached", key=key, external_ref=external_ref, attached=attached
        )
        return attached

    async def complete(self, key: str, result: dict[str, Any]) -> bool:
        """
        Mark the record completed with its cached result.

        Returns False when another caller completed it first; the stored
        result is left untouched.
        """
        async with self.store.transaction():
            won = await self.store.complete_idempotency_record(key, result)
        if not won:
            logger.info("idempotency_already_completed", key=key)
        return won

    async def fail(self, key: str, error: str) -> bool:
        async with self.store.transaction():
            marked = await self.store.fail_idempotency_record(key, error)
        logger.warning("idempotency_record_failed", key=key, error=error, marked=marked)
        return marked

    async def cleanup_expired(self, caller: CallerIdentity, max_age_hours: int = 24) -> int:
        """
        Delete records older than max_age_hours.

        Privileged callers sweep every user; others only their own records.

        Raises:
            InvalidArgumentError: max_age_hours outside 1-168
        """
        if (
            isinstance(max_age_hours, bool)
            or not isinstance(max_age_hours, int)
            or not MIN_RETENTION_HOURS <= max_age_hours <= MAX_RETENTION_HOURS
        ):
            raise InvalidArgumentError(
                "max_age_hours",
                f"must be an integer between {MIN_RETENTION_HOURS} and {MAX_RETENTION_HOURS}",
            )

        cutoff = datetime.now(UTC) - timedelta(hours=max_age_hours)
        scope = None if caller.is_admin else caller.user_id

        async with self.store.transaction():
            deleted = await self.store.delete_idempotency_records_before(cutoff, scope)

        metrics.record_idempotency_cleanup(deleted)
        logger.info(
            "idempotency_cleanup_completed",
            deleted=deleted,
            max_age_hours=max_age_hours,
            scoped_to_user=scope,
        )
        return deleted

    @staticmethod
    def _check_ownership(
        record: IdempotencyRecordData, user_id: str, operation: OperationType, amount: int
    ) -> None:
        if record.user_id != user_id:
            logger.warning(
                "idempotency_key_user_mismatch",
                key=record.key,
                record_user_id=record.user_id,
                user_id=user_id,
            )
            raise IdempotencyConflictError(record.key, "key belongs to a different user")
        if record.operation != operation:
            raise IdempotencyConflictError(
                record.key,
                f"key was used for {record.operation.value}, not {operation.value}",
            )
        if record.amount != amount:
            raise IdempotencyConflictError(
                record.key, f"key was used for amount {record.amount}, not {amount}"
            )
