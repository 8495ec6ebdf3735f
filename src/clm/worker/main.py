"""Expiration sweep worker entry point.

This module provides the SweepWorker that:
- Wakes up every ``interval_seconds``
- Finds tenants with overdue contracts (or uses the configured tenant list)
- Runs one lease-guarded expiration sweep per tenant
- Handles graceful shutdown via SIGTERM/SIGINT

Several workers may run side by side; the per-tenant lease keeps each
tenant's sweep to a single owner.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn

from sqlalchemy import select

from clm.core.context import Clock, TenantContext, utc_now
from clm.core.errors import StoreUnavailableError
from clm.db.models.contracts import Contract
from clm.services.predicates import overdue
from clm.services.sweeper import ExpirationSweeper

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from clm.core.config import Settings
    from clm.schemas import SweepSummary

logger = logging.getLogger(__name__)


@dataclass
class SweepWorkerConfig:
    """Configuration for the sweep worker process.

    Attributes:
        worker_id: Unique identifier for this worker instance (lease holder).
        interval_seconds: Seconds between sweep rounds.
        batch_size: Contracts expired per sweep call.
        lease_ttl_seconds: Lifetime of a tenant lease.
        tenant_ids: Tenants to sweep. Empty means discover tenants with due contracts.
        max_batches_per_tenant: Sweep calls per tenant per round while batches come back full.
        shutdown_timeout: Seconds to wait for graceful shutdown.
    """

    worker_id: str = field(default_factory=lambda: f"sweeper-{uuid.uuid4().hex[:8]}")
    interval_seconds: float = 300.0
    batch_size: int = 500
    lease_ttl_seconds: int = 300
    tenant_ids: list[uuid.UUID] = field(default_factory=list)
    max_batches_per_tenant: int = 10
    shutdown_timeout: float = 30.0


def config_from_settings(settings: Settings) -> SweepWorkerConfig:
    """Build a SweepWorkerConfig from application settings."""
    return SweepWorkerConfig(
        interval_seconds=settings.sweeper.interval_seconds,
        batch_size=settings.sweeper.batch_size,
        lease_ttl_seconds=settings.sweeper.lease_ttl_seconds,
        tenant_ids=list(settings.sweeper.tenant_ids),
    )


class SweepWorker:
    """Periodically runs the expiration sweep for every tenant.

    Example:
        worker = SweepWorker(config, get_session_factory())
        await worker.start()
    """

    def __init__(
        self,
        config: SweepWorkerConfig,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the worker.

        Args:
            config: Worker configuration settings.
            session_factory: Database session factory.
            clock: Source of the current time.
        """
        self.config = config
        self._session_factory = session_factory
        self._clock = clock
        self._shutdown_event = asyncio.Event()
        self._sweeper = ExpirationSweeper(
            session_factory,
            clock,
            batch_size=config.batch_size,
            lease_ttl_seconds=config.lease_ttl_seconds,
            holder=config.worker_id,
        )
        self._started_at: datetime | None = None
        self._rounds = 0
        self._contracts_expired = 0
        self._contracts_failed = 0

    async def start(self) -> None:
        """Run sweep rounds until shutdown is requested."""
        self._started_at = datetime.now(UTC)
        logger.info(
            "Sweep worker starting: worker_id=%s, interval=%ss",
            self.config.worker_id,
            self.config.interval_seconds,
        )
        try:
            await self._run_loop()
        finally:
            logger.info(
                "Sweep worker stopped: worker_id=%s, rounds=%d, expired=%d, failed=%d, uptime=%s",
                self.config.worker_id,
                self._rounds,
                self._contracts_expired,
                self._contracts_failed,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown of the worker."""
        logger.info("Sweep worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    async def run_once(self) -> list[SweepSummary]:
        """Run one sweep round over all target tenants.

        Returns:
            One summary per sweep call made.
        """
        summaries: list[SweepSummary] = []
        for tenant_id in await self._target_tenants():
            if self._shutdown_event.is_set():
                break
            ctx = TenantContext(tenant_id=tenant_id, user_id=self.config.worker_id)
            for _ in range(self.config.max_batches_per_tenant):
                summary = await self._sweeper.process_expired_contracts(ctx)
                summaries.append(summary)
                self._contracts_expired += summary.processed
                self._contracts_failed += summary.failed
                if (
                    summary.skipped_due_to_lease
                    or not summary.has_more
                    or summary.processed == 0
                    or self._shutdown_event.is_set()
                ):
                    break
        self._rounds += 1
        return summaries

    async def _run_loop(self) -> None:
        """Main loop: sweep, then wait for the interval or shutdown."""
        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except StoreUnavailableError as e:
                logger.warning("Sweep round aborted, store unavailable: %s", e.message)
            except Exception as e:
                # Log error but continue running
                logger.exception("Error in sweep loop: %s", e)

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.config.interval_seconds,
                )

    async def _target_tenants(self) -> list[uuid.UUID]:
        if self.config.tenant_ids:
            return list(self.config.tenant_ids)

        query = (
            select(Contract.tenant_id)
            .where(overdue(self._clock()))
            .distinct()
            .order_by(Contract.tenant_id)
        )
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    def _get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        if minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"


# Shutdown event and its loop, set once the worker loop is running
_shutdown_event: asyncio.Event | None = None
_shutdown_loop: asyncio.AbstractEventLoop | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None and _shutdown_loop is not None:
        _shutdown_loop.call_soon_threadsafe(_shutdown_event.set)


async def _async_main(shutdown_event: asyncio.Event, settings: Settings) -> None:
    """Async entry point for the worker.

    Args:
        shutdown_event: Event to signal shutdown request.
        settings: Application settings.
    """
    from clm.db import close_engine, get_session_factory

    config = config_from_settings(settings)
    worker = SweepWorker(config, get_session_factory(settings))
    worker_task = asyncio.create_task(worker.start())

    try:
        await shutdown_event.wait()
        await worker.stop()
        try:
            await asyncio.wait_for(worker_task, timeout=config.shutdown_timeout)
        except TimeoutError:
            logger.warning("Sweep worker did not stop within timeout, forcing shutdown")
            worker_task.cancel()
    finally:
        await close_engine()


def run() -> NoReturn:
    """Run the sweep worker process.

    Loads settings, sets up logging, registers signal handlers and runs the
    sweep loop until SIGTERM/SIGINT.
    """
    from clm.core.settings import get_settings

    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not settings.sweeper.enabled:
        logger.info("Sweeper disabled (CLM_SWEEPER__ENABLED=false), exiting")
        sys.exit(0)

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("%s sweep worker starting...", settings.app_name)

    async def _run_with_event() -> None:
        global _shutdown_event, _shutdown_loop
        _shutdown_event = asyncio.Event()
        _shutdown_loop = asyncio.get_running_loop()
        await _async_main(_shutdown_event, settings)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Sweep worker interrupted")
    except Exception as e:
        logger.exception("Sweep worker failed: %s", e)
        sys.exit(1)

    logger.info("Sweep worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
