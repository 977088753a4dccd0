"""
Idempotency guard for client-retried mutations.

A request carrying an Idempotency-Key runs at most once per (key, scope)
within the retention window; repeats get the first result back verbatim.

The reservation row is inserted inside the same transaction as the protected
operation. Concurrent first attempts therefore serialize on the unique
(key, scope) index: the loser waits for the winner's commit and then replays
its stored result, or takes over the key if the winner rolled back.
"""

from collections.abc import Callable
from datetime import timedelta
from typing import Any

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.core.exceptions import Conflict, ValidationFailed
from apps.core.logging import get_logger
from apps.core.models import IdempotencyRecord

logger = get_logger(__name__)

MAX_KEY_LENGTH = 255


class IdempotencyInProgress(Conflict):
    """Another request with the same key has not finished yet."""

    code = "IDEMPOTENCY_IN_PROGRESS"
    default_message = "A request with this Idempotency-Key is still being processed"


def _ttl() -> timedelta:
    return timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS)


def check_or_reserve(key: str, scope: str) -> Any | None:
    """
    Return the stored result for (key, scope), or reserve the key.

    Must be called inside ``transaction.atomic()``; the reservation lives and
    dies with the caller's transaction.

    Returns:
        The prior result if one was stored, otherwise None (key reserved)

    Raises:
        IdempotencyInProgress: If a reservation exists without a result
    """
    now = timezone.now()

    # Expired records no longer guard anything; free the key for reuse
    IdempotencyRecord.objects.filter(key=key, scope=scope, expires_at__lte=now).delete()

    try:
        with transaction.atomic():
            IdempotencyRecord.objects.create(key=key, scope=scope, expires_at=now + _ttl())
    except IntegrityError:
        record = IdempotencyRecord.objects.get(key=key, scope=scope)
        if not record.is_complete:
            logger.warning("idempotency_key_in_flight", scope=scope)
            raise IdempotencyInProgress() from None
        logger.info("idempotency_replay", scope=scope)
        return record.result

    return None


def store(key: str, scope: str, result: Any) -> None:
    """Fill the reservation for (key, scope) with the operation's result."""
    updated = IdempotencyRecord.objects.filter(key=key, scope=scope).update(result=result)
    if not updated:
        # Reservation vanished (e.g. purged mid-request); record the result anyway
        IdempotencyRecord.objects.create(
            key=key,
            scope=scope,
            result=result,
            expires_at=timezone.now() + _ttl(),
        )


def run_idempotent(
    key: str | None,
    scope: str,
    operation: Callable[[], Any],
) -> tuple[Any, bool]:
    """
    Run ``operation`` at most once for (key, scope).

    ``operation`` must return a JSON-serializable result and must not call
    external services; it runs inside the reservation's transaction.

    Returns:
        Tuple of (result, replayed) where replayed is True for a stored result
    """
    if not key:
        return operation(), False

    if len(key) > MAX_KEY_LENGTH:
        raise ValidationFailed(f"Idempotency-Key must be at most {MAX_KEY_LENGTH} characters")

    with transaction.atomic():
        prior = check_or_reserve(key, scope)
        if prior is not None:
            return prior, True

        result = operation()
        store(key, scope, result)

    return result, False


def purge_expired(batch_size: int = 1000, dry_run: bool = False) -> int:
    """
    Delete expired idempotency records in batches.

    Returns:
        Number of records deleted (or that would be deleted on dry run)
    """
    queryset = IdempotencyRecord.objects.filter(expires_at__lte=timezone.now())
    if dry_run:
        return queryset.count()

    total_deleted = 0
    while True:
        ids_to_delete = list(queryset.values_list("id", flat=True)[:batch_size])
        if not ids_to_delete:
            break
        deleted_count, _ = IdempotencyRecord.objects.filter(id__in=ids_to_delete).delete()
        total_deleted += deleted_count

    return total_deleted
