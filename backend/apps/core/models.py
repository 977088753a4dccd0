"""
Core models - shared base classes and request idempotency records.
"""

from django.db import models
from django.utils import timezone


class TimestampedModel(models.Model):
    """
    Abstract base model with created_at/updated_at timestamps.
    """

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class IdempotencyRecord(models.Model):
    """
    Result of a client request protected by an Idempotency-Key header.

    A row with ``result`` NULL is a reservation held by an in-flight request.
    Rows past ``expires_at`` are ignored and may be replaced.
    """

    key = models.CharField(
        max_length=255,
        help_text="Client supplied Idempotency-Key header value",
    )
    scope = models.CharField(
        max_length=255,
        help_text=(
            "Operation and caller the key applies to, e.g. 'subscription_create:user_1:owner'"
        ),
    )
    result = models.JSONField(
        null=True,
        blank=True,
        help_text="Serialized response data returned on replay",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    expires_at = models.DateTimeField(db_index=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["key", "scope"], name="uniq_idempotency_key_scope"),
        ]

    def __str__(self) -> str:
        return f"{self.scope}:{self.key}"

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= timezone.now()

    @property
    def is_complete(self) -> bool:
        return self.result is not None
