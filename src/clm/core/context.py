"""Request context and clock shared by every engine operation."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: current UTC time."""
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class TenantContext:
    """Identifies the tenant (and optionally the acting user) of a call.

    Every read and write is scoped by ``tenant_id``; a record belonging to
    another tenant is reported as not found.
    """

    tenant_id: uuid.UUID
    user_id: str | None = None

    def log_extra(self) -> dict[str, str]:
        """Fields to attach to log records."""
        extra = {"tenant_id": str(self.tenant_id)}
        if self.user_id is not None:
            extra["user_id"] = self.user_id
        return extra
