"""Read-only queries over contracts and their lifecycle logs.

Window filters (``expires_within_days`` / ``renewal_within_days``) reuse
the alert predicates, so a listing and an alert run over the same window
select the same contracts.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select

from clm.core.config import AlertSettings
from clm.core.context import Clock, utc_now
from clm.core.errors import ContractNotFoundError
from clm.db.models.base import AlertType, ContractStatus, SignatureStatus
from clm.db.models.contracts import Contract, LifecycleEvent
from clm.schemas import LifecycleStats, MonthlyCount, StageDuration
from clm.services.alerting import SECONDS_PER_DAY, AlertEngine
from clm.services.predicates import contract_filter_clauses
from clm.services.projector import stage_intervals, summarize_durations
from clm.services.transitions import ACTIVE_STATUSES

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlalchemy.sql.elements import ColumnElement

    from clm.core.context import TenantContext
    from clm.schemas import ContractFilters

logger = logging.getLogger(__name__)

TREND_MONTHS = 12


def trend_months(now: datetime, months: int = TREND_MONTHS) -> list[str]:
    """Return the last ``months`` calendar months (oldest first) as YYYY-MM, in UTC."""
    now = now.astimezone(UTC)
    index = now.year * 12 + now.month - 1
    return [
        f"{i // 12:04d}-{i % 12 + 1:02d}" for i in range(index - months + 1, index + 1)
    ]


def month_start(key: str) -> datetime:
    year, month = key.split("-")
    return datetime(int(year), int(month), 1, tzinfo=UTC)


class LifecycleQueryService:
    """Lists contracts, reads lifecycle history and computes statistics."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = utc_now,
        alert_settings: AlertSettings | None = None,
    ) -> None:
        self._session = session
        self._clock = clock
        self._alert_settings = alert_settings or AlertSettings()

    def _where(
        self,
        ctx: TenantContext,
        filters: ContractFilters | None,
        now: datetime,
    ) -> list[ColumnElement[bool]]:
        return [Contract.tenant_id == ctx.tenant_id, *contract_filter_clauses(filters, now)]

    async def list_contracts(
        self,
        ctx: TenantContext,
        filters: ContractFilters | None = None,
    ) -> Sequence[Contract]:
        """List a tenant's contracts, newest first.

        Args:
            ctx: Tenant context.
            filters: Optional filters, including limit/offset.

        Returns:
            Matching contracts ordered by created_at descending.
        """
        now = self._clock()
        query = (
            select(Contract)
            .where(*self._where(ctx, filters, now))
            .order_by(Contract.created_at.desc(), Contract.contract_id.desc())
        )
        if filters is not None:
            if filters.offset:
                query = query.offset(filters.offset)
            if filters.limit is not None:
                query = query.limit(filters.limit)

        result = await self._session.execute(query)
        return result.scalars().all()

    async def get_lifecycle_history(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
    ) -> Sequence[LifecycleEvent]:
        """Return a contract's events in log order.

        Raises:
            ContractNotFoundError: If the contract does not exist for the tenant.
        """
        exists = await self._session.execute(
            select(Contract.contract_id).where(
                Contract.tenant_id == ctx.tenant_id,
                Contract.contract_id == contract_id,
            )
        )
        if exists.scalar_one_or_none() is None:
            raise ContractNotFoundError(contract_id)

        result = await self._session.execute(
            select(LifecycleEvent)
            .where(
                LifecycleEvent.tenant_id == ctx.tenant_id,
                LifecycleEvent.contract_id == contract_id,
            )
            .order_by(LifecycleEvent.sequence)
        )
        return result.scalars().all()

    async def get_lifecycle_stats(
        self,
        ctx: TenantContext,
        filters: ContractFilters | None = None,
    ) -> LifecycleStats:
        """Aggregate lifecycle statistics for the tenant's (filtered) contracts.

        Includes counts per status, time spent in each status (average,
        median, 90th percentile; the current stage runs until now), average
        signing time, alert candidate counts for the default window and a
        12-month creation trend.
        """
        now = self._clock()
        where = self._where(ctx, filters, now)

        # Counts per (status, signature status)
        rows = (
            await self._session.execute(
                select(Contract.status, Contract.signature_status, func.count())
                .where(*where)
                .group_by(Contract.status, Contract.signature_status)
            )
        ).all()
        by_status: dict[ContractStatus, int] = dict.fromkeys(ContractStatus, 0)
        fully_signed = 0
        for status, signature_status, count in rows:
            by_status[status] += count
            if signature_status is SignatureStatus.FULLY_SIGNED:
                fully_signed += count
        total = sum(by_status.values())

        # Average days from creation to signature
        avg_seconds = (
            await self._session.execute(
                select(
                    func.avg(func.extract("epoch", Contract.signed_at - Contract.created_at))
                ).where(*where, Contract.signed_at.is_not(None))
            )
        ).scalar_one_or_none()
        average_signing_days = (
            round(float(avg_seconds) / SECONDS_PER_DAY, 2) if avg_seconds is not None else None
        )

        time_in_stage = await self._time_in_stage(ctx, where, now)

        alerts = AlertEngine(self._session, self._clock, self._alert_settings)
        renewal_count = await alerts.count_candidates(ctx, AlertType.RENEWAL)
        expiration_count = await alerts.count_candidates(ctx, AlertType.EXPIRATION)

        monthly_trend = await self._monthly_trend(where, now)

        logger.debug(
            "Lifecycle stats computed",
            extra={**ctx.log_extra(), "total_contracts": total},
        )

        return LifecycleStats(
            total_contracts=total,
            active_contracts=sum(by_status[s] for s in ACTIVE_STATUSES),
            expired_contracts=by_status[ContractStatus.EXPIRED],
            pending_signature=by_status[ContractStatus.SENT],
            fully_signed=fully_signed,
            average_signing_time_days=average_signing_days,
            renewal_alerts=renewal_count,
            expiration_alerts=expiration_count,
            contracts_by_status=by_status,
            time_in_stage=time_in_stage,
            monthly_creation_trend=monthly_trend,
            generated_at=now,
        )

    async def _time_in_stage(
        self,
        ctx: TenantContext,
        where: list[ColumnElement[bool]],
        now: datetime,
    ) -> list[StageDuration]:
        contract_ids = select(Contract.contract_id).where(*where)
        events = (
            (
                await self._session.execute(
                    select(LifecycleEvent)
                    .where(
                        LifecycleEvent.tenant_id == ctx.tenant_id,
                        LifecycleEvent.contract_id.in_(contract_ids),
                    )
                    .order_by(LifecycleEvent.contract_id, LifecycleEvent.sequence)
                )
            )
            .scalars()
            .all()
        )

        per_contract: dict[uuid.UUID, list[LifecycleEvent]] = defaultdict(list)
        for event in events:
            per_contract[event.contract_id].append(event)

        durations: dict[ContractStatus, list[float]] = defaultdict(list)
        for contract_events in per_contract.values():
            for interval in stage_intervals(contract_events, now):
                durations[interval.status].append(interval.duration_seconds)

        stages = []
        for status in ContractStatus:
            if status not in durations:
                continue
            summary = summarize_durations(durations[status])
            stages.append(
                StageDuration(
                    status=status,
                    count=summary.count,
                    average_seconds=summary.average_seconds,
                    p50_seconds=summary.p50_seconds,
                    p90_seconds=summary.p90_seconds,
                )
            )
        return stages

    async def _monthly_trend(
        self,
        where: list[ColumnElement[bool]],
        now: datetime,
    ) -> list[MonthlyCount]:
        months = trend_months(now)
        month_key = func.to_char(func.timezone("UTC", Contract.created_at), "YYYY-MM")
        rows = (
            await self._session.execute(
                select(month_key, func.count())
                .where(*where, Contract.created_at >= month_start(months[0]))
                .group_by(month_key)
            )
        ).all()
        counts = {key: count for key, count in rows}
        return [MonthlyCount(month=m, count=counts.get(m, 0)) for m in months]
