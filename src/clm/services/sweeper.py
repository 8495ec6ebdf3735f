"""Expiration sweeper.

Moves contracts whose term has elapsed to EXPIRED, one transaction per
contract, under a per-tenant lease so that a single sweeper runs per tenant
at a time:

1. Acquire the lease in its own committed transaction (skip if held)
2. Select a batch of due contracts, oldest expiry first
3. Record an EXPIRED event for each; failures are logged and skipped
4. Report overdue contracts whose status cannot move to EXPIRED as failed
5. Release the lease

Running it again right after a complete sweep is a no-op: expired
contracts are no longer selected.
"""

from __future__ import annotations

import logging
import os
import socket
import uuid
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from clm.core.context import Clock, TenantContext, utc_now
from clm.core.errors import (
    ContractLifecycleError,
    LeaseHeldError,
    LifecycleErrorReason,
    StoreUnavailableError,
    translate_store_errors,
)
from clm.db.models.base import ActorType, LifecycleEventType
from clm.db.models.contracts import Contract
from clm.schemas import SweepSummary
from clm.services.leases import SweepLeaseService
from clm.services.lifecycle import ContractLifecycleService
from clm.services.predicates import sweep_blocked, sweep_due
from clm.services.transitions import EXPIRABLE_STATUSES

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
DEFAULT_LEASE_TTL_SECONDS = 300


def default_holder() -> str:
    """Lease holder id unique to this process and sweeper instance."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ExpirationSweeper:
    """Expires due contracts for one tenant per call.

    Each contract is handled in its own session and transaction so one
    failure never rolls back the others.

    Attributes:
        batch_size: Maximum contracts handled per call.
        lease_ttl_seconds: Lifetime of the tenant lease.
        holder: Lease holder id of this sweeper.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS,
        holder: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self.batch_size = batch_size
        self.lease_ttl_seconds = lease_ttl_seconds
        self.holder = holder or default_holder()

    async def process_expired_contracts(self, ctx: TenantContext) -> SweepSummary:
        """Run one sweep for the tenant.

        Returns:
            Summary with processed/failed counts. ``skipped_due_to_lease`` is
            set when another sweeper holds the tenant lease; ``has_more`` when
            the batch was full and another call may find more due contracts.

        Raises:
            StoreUnavailableError: If the database cannot be reached.
        """
        started_at = self._clock()
        try:
            await self._acquire_lease(ctx)
        except LeaseHeldError as e:
            logger.info(
                "Sweep skipped, lease held elsewhere",
                extra={**ctx.log_extra(), "holder": self.holder, "reason": e.message},
            )
            return SweepSummary(
                tenant_id=ctx.tenant_id,
                skipped_due_to_lease=True,
                started_at=started_at,
                finished_at=self._clock(),
            )

        processed = 0
        failed_ids: list[uuid.UUID] = []
        try:
            now = self._clock()
            due_ids = await self._select_due(ctx, now)
            for contract_id in due_ids:
                outcome = await self._expire_one(ctx, contract_id, now)
                if outcome is True:
                    processed += 1
                elif outcome is False:
                    failed_ids.append(contract_id)
            failed_ids.extend(await self._report_blocked(ctx, now))
        finally:
            await self._release_lease(ctx)

        summary = SweepSummary(
            tenant_id=ctx.tenant_id,
            processed=processed,
            failed=len(failed_ids),
            failed_ids=failed_ids,
            has_more=len(due_ids) >= self.batch_size,
            started_at=started_at,
            finished_at=self._clock(),
        )
        logger.info(
            "Expiration sweep completed",
            extra={
                **ctx.log_extra(),
                "processed": summary.processed,
                "failed": summary.failed,
                "has_more": summary.has_more,
            },
        )
        return summary

    async def _acquire_lease(self, ctx: TenantContext) -> None:
        async with self._session_factory() as session:
            with translate_store_errors("sweep lease acquire"):
                acquired = await SweepLeaseService(session, self._clock).acquire(
                    ctx.tenant_id, self.holder, self.lease_ttl_seconds
                )
                await session.commit()
        if not acquired:
            raise LeaseHeldError(ctx.tenant_id)

    async def _release_lease(self, ctx: TenantContext) -> None:
        try:
            async with self._session_factory() as session:
                await SweepLeaseService(session, self._clock).release(ctx.tenant_id, self.holder)
                await session.commit()
        except SQLAlchemyError:
            # The lease lapses on its own after the TTL
            logger.exception(
                "Failed to release sweep lease",
                extra={**ctx.log_extra(), "holder": self.holder},
            )

    async def _select_due(self, ctx: TenantContext, now: datetime) -> list[uuid.UUID]:
        query = (
            select(Contract.contract_id)
            .where(Contract.tenant_id == ctx.tenant_id, sweep_due(now))
            .order_by(Contract.effective_expires_at, Contract.contract_id)
            .limit(self.batch_size)
        )
        async with self._session_factory() as session:
            with translate_store_errors("sweep selection"):
                result = await session.execute(query)
                return list(result.scalars().all())

    async def _report_blocked(self, ctx: TenantContext, now: datetime) -> list[uuid.UUID]:
        """Overdue contracts still in draft or approval: no transition to EXPIRED exists."""
        query = (
            select(Contract.contract_id, Contract.status)
            .where(Contract.tenant_id == ctx.tenant_id, sweep_blocked(now))
            .order_by(Contract.effective_expires_at, Contract.contract_id)
            .limit(self.batch_size)
        )
        async with self._session_factory() as session:
            with translate_store_errors("sweep selection"):
                rows = (await session.execute(query)).all()

        for contract_id, status in rows:
            logger.warning(
                "Overdue contract cannot expire from its status",
                extra={
                    **ctx.log_extra(),
                    "contract_id": str(contract_id),
                    "status": status.value,
                    "reason": LifecycleErrorReason.INVALID_TRANSITION.value,
                },
            )
        return [contract_id for contract_id, _ in rows]

    async def _expire_one(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        now: datetime,
    ) -> bool | None:
        """Expire one contract in its own transaction.

        Returns:
            True if expired, False on a lifecycle failure, None if the contract
            stopped being due between selection and locking.
        """
        async with self._session_factory() as session:
            try:
                with translate_store_errors("sweep expire"):
                    service = ContractLifecycleService(session, self._clock)
                    contract = await service.get_contract(ctx, contract_id, for_update=True)
                    if (
                        contract.status not in EXPIRABLE_STATUSES
                        or contract.effective_expires_at is None
                        or contract.effective_expires_at > now
                    ):
                        await session.rollback()
                        return None

                    original_expiration = contract.effective_expires_at
                    await service.record_event(
                        ctx,
                        contract_id,
                        LifecycleEventType.EXPIRED,
                        {
                            "swept_at": now.isoformat(),
                            "original_expiration": original_expiration.isoformat(),
                            "auto_expired": True,
                        },
                        actor_type=ActorType.SYSTEM,
                        triggered_by=f"sweeper:{self.holder}",
                    )
                    await session.commit()
                return True
            except StoreUnavailableError:
                await session.rollback()
                raise
            except ContractLifecycleError as e:
                await session.rollback()
                logger.warning(
                    "Failed to expire contract",
                    extra={
                        **ctx.log_extra(),
                        "contract_id": str(contract_id),
                        "reason": e.reason.value,
                        "error": e.message,
                    },
                )
                return False
