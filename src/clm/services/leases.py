"""Per-tenant sweep lease.

A single upsert decides ownership: the row is inserted if absent, or taken
over only when its ``expires_at`` has passed. Failing to acquire is a
normal outcome, not an error.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert

from clm.core.context import Clock, utc_now
from clm.db.models.alerts import SweepLease

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class SweepLeaseService:
    """Acquires and releases per-tenant sweep leases."""

    def __init__(self, session: AsyncSession, clock: Clock = utc_now) -> None:
        self._session = session
        self._clock = clock

    async def acquire(self, tenant_id: uuid.UUID, holder: str, ttl_seconds: int) -> bool:
        """Try to take the tenant's lease.

        Args:
            tenant_id: Tenant whose sweep is being guarded.
            holder: Identifier of the caller (worker name, host and pid).
            ttl_seconds: Lease lifetime; another holder may take over after it.

        Returns:
            True if ``holder`` now owns the lease.
        """
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds)

        stmt = insert(SweepLease).values(
            tenant_id=tenant_id,
            holder=holder,
            acquired_at=now,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SweepLease.tenant_id],
            set_={
                "holder": stmt.excluded.holder,
                "acquired_at": stmt.excluded.acquired_at,
                "expires_at": stmt.excluded.expires_at,
            },
            where=SweepLease.expires_at <= now,
        ).returning(SweepLease.holder)

        result = await self._session.execute(stmt)
        acquired = result.scalar_one_or_none() == holder

        logger.debug(
            "Sweep lease %s",
            "acquired" if acquired else "held elsewhere",
            extra={"tenant_id": str(tenant_id), "holder": holder},
        )
        return acquired

    async def release(self, tenant_id: uuid.UUID, holder: str) -> bool:
        """Release the lease if ``holder`` still owns it.

        Returns:
            True if a lease row was deleted.
        """
        stmt = delete(SweepLease).where(
            SweepLease.tenant_id == tenant_id,
            SweepLease.holder == holder,
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0
