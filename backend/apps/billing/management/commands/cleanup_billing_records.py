"""
Cleanup billing records management command.

Ages out the two write-once guard tables: expired idempotency records and
processed webhook events past their retention window. Unprocessed webhook
events are kept so failed deliveries stay inspectable. Designed to run as a
scheduled job (e.g., daily cron).
"""

from datetime import datetime, timedelta

from django.conf import settings
from django.core.management.base import BaseCommand
from django.db.models import QuerySet
from django.utils import timezone

from apps.billing.models import WebhookEvent
from apps.core.idempotency import purge_expired
from apps.core.logging import get_logger

logger = get_logger(__name__)


class Command(BaseCommand):
    help = "Delete expired idempotency records and old processed webhook events"

    def add_arguments(self, parser):
        parser.add_argument(
            "--webhook-retention-days",
            type=int,
            default=settings.WEBHOOK_EVENT_RETENTION_DAYS,
            help=(
                "Delete processed webhook events older than N days "
                f"(default: {settings.WEBHOOK_EVENT_RETENTION_DAYS})"
            ),
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            default=1000,
            help="Delete in batches of N to avoid long locks (default: 1000)",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would be deleted without actually deleting",
        )

    def handle(self, *args, **options):
        retention_days = options["webhook_retention_days"]
        batch_size = options["batch_size"]
        dry_run = options["dry_run"]

        cutoff = timezone.now() - timedelta(days=retention_days)

        logger.info(
            "billing_cleanup_started",
            webhook_retention_days=retention_days,
            webhook_cutoff=cutoff.isoformat(),
            dry_run=dry_run,
        )

        idempotency_deleted = purge_expired(batch_size=batch_size, dry_run=dry_run)
        webhooks_deleted = self._cleanup_webhook_events(cutoff, batch_size, dry_run)

        logger.info(
            "billing_cleanup_completed",
            idempotency_deleted=idempotency_deleted,
            webhooks_deleted=webhooks_deleted,
            dry_run=dry_run,
        )

        if dry_run:
            self.stdout.write(
                f"DRY RUN: Would delete {idempotency_deleted} idempotency records and "
                f"{webhooks_deleted} webhook events"
            )
        else:
            self.stdout.write(
                self.style.SUCCESS(
                    f"Deleted {idempotency_deleted} idempotency records and "
                    f"{webhooks_deleted} webhook events"
                )
            )

    def _cleanup_webhook_events(self, cutoff: datetime, batch_size: int, dry_run: bool) -> int:
        """Delete processed webhook events created before ``cutoff``, in batches."""
        queryset: QuerySet[WebhookEvent] = WebhookEvent.objects.filter(
            processed=True,
            created_at__lt=cutoff,
        )

        if dry_run:
            return queryset.count()

        total_deleted = 0
        while True:
            ids_to_delete = list(queryset.values_list("id", flat=True)[:batch_size])
            if not ids_to_delete:
                break

            deleted_count, _ = WebhookEvent.objects.filter(id__in=ids_to_delete).delete()
            total_deleted += deleted_count

            logger.debug(
                "webhook_cleanup_batch",
                batch_deleted=deleted_count,
                total_deleted=total_deleted,
            )

        return total_deleted
