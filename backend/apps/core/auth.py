"""
Authentication context for request lifecycle.

The upstream auth service issues identity tokens; this backend only needs the
caller's user id and which side of the marketplace they act for.
"""

from dataclasses import dataclass

from django.db import models


class Audience(models.TextChoices):
    """Which side of the marketplace a user acts for."""

    OWNER = "owner", "Owner"
    TENANT = "tenant", "Tenant"


@dataclass(frozen=True)
class AuthContext:
    """
    Authenticated identity attached to requests by BearerAuth.

    Attributes:
        user_id: Opaque id of the user in the upstream auth service
        audience: Owner or tenant
    """

    user_id: str
    audience: Audience

    @property
    def is_owner(self) -> bool:
        return self.audience == Audience.OWNER

    @property
    def is_tenant(self) -> bool:
        return self.audience == Audience.TENANT
