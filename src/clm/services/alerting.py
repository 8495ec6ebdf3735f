"""Renewal and expiration alerts.

Alerts are persisted so they can be acknowledged. Raising them is
idempotent per (contract, alert type):

- an open (unacknowledged) alert is returned again with the same id
- an acknowledged alert for the same due date keeps the contract quiet
  until that due date has passed
- otherwise a new alert is inserted; concurrent raisers converge on one
  row through the partial unique index (INSERT ... ON CONFLICT DO NOTHING)

Alerts never change contract status.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert

from clm.core.config import AlertSettings
from clm.core.context import Clock, utc_now
from clm.core.errors import AlertNotFoundError
from clm.db.models.alerts import ContractAlert
from clm.db.models.base import AlertLevel, AlertType
from clm.db.models.contracts import Contract
from clm.schemas import AcknowledgeResult, AlertRecord
from clm.services.predicates import (
    expiration_window,
    renewal_due_at,
    renewal_due_date,
    renewal_window,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from clm.core.context import TenantContext

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def days_until(due: datetime, now: datetime) -> int:
    """Whole days until ``due``, rounded up (0 on the due instant, negative after)."""
    return math.ceil((due - now).total_seconds() / SECONDS_PER_DAY)


def alert_level(days_left: int, urgent_threshold_days: int) -> AlertLevel:
    if days_left <= 0:
        return AlertLevel.OVERDUE
    if days_left <= urgent_threshold_days:
        return AlertLevel.URGENT
    return AlertLevel.WARNING


class AlertEngine:
    """Finds contracts nearing renewal or expiration and raises alerts.

    Attributes:
        settings: Alert window and urgency thresholds.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = utc_now,
        settings: AlertSettings | None = None,
    ) -> None:
        """Initialize the alert engine.

        Args:
            session: SQLAlchemy async session for database operations.
            clock: Source of the current time.
            settings: Alert settings; library defaults if omitted.
        """
        self._session = session
        self._clock = clock
        self.settings = settings or AlertSettings()

    async def renewal_alerts(
        self,
        ctx: TenantContext,
        days_ahead: int | None = None,
    ) -> list[AlertRecord]:
        """Raise (or return) renewal alerts due within ``days_ahead`` days.

        A renewal is due ``renewal_window_days`` before the contract expires.
        Only SIGNED and EXPIRED contracts with a renewal window qualify.

        Returns:
            Alerts ordered by due date.
        """
        now = self._clock()
        days = self._window(days_ahead)
        query = (
            select(Contract)
            .where(
                Contract.tenant_id == ctx.tenant_id,
                renewal_window(now, days, self.settings.max_overdue_days),
            )
            .order_by(renewal_due_at(), Contract.contract_id)
        )
        contracts = (await self._session.execute(query)).scalars().all()

        records: list[AlertRecord] = []
        for contract in contracts:
            due = renewal_due_date(contract.effective_expires_at, contract.renewal_window_days)
            if due is None:
                continue
            alert = await self._raise(ctx, contract, AlertType.RENEWAL, due, now)
            if alert is not None:
                records.append(self._to_record(alert, contract, now))

        await self._session.flush()
        logger.info(
            "Renewal alerts evaluated",
            extra={
                **ctx.log_extra(),
                "days_ahead": days,
                "candidates": len(contracts),
                "alerts": len(records),
            },
        )
        return records

    async def expiration_alerts(
        self,
        ctx: TenantContext,
        days_ahead: int | None = None,
    ) -> list[AlertRecord]:
        """Raise (or return) expiration alerts for contracts ending within ``days_ahead`` days.

        Expired, cancelled and archived contracts are excluded.

        Returns:
            Alerts ordered by due date.
        """
        now = self._clock()
        days = self._window(days_ahead)
        query = (
            select(Contract)
            .where(
                Contract.tenant_id == ctx.tenant_id,
                expiration_window(now, days, self.settings.max_overdue_days),
            )
            .order_by(Contract.effective_expires_at, Contract.contract_id)
        )
        contracts = (await self._session.execute(query)).scalars().all()

        records: list[AlertRecord] = []
        for contract in contracts:
            if contract.effective_expires_at is None:
                continue
            alert = await self._raise(
                ctx, contract, AlertType.EXPIRATION, contract.effective_expires_at, now
            )
            if alert is not None:
                records.append(self._to_record(alert, contract, now))

        await self._session.flush()
        logger.info(
            "Expiration alerts evaluated",
            extra={
                **ctx.log_extra(),
                "days_ahead": days,
                "candidates": len(contracts),
                "alerts": len(records),
            },
        )
        return records

    async def acknowledge_alert(
        self,
        ctx: TenantContext,
        alert_id: uuid.UUID,
        acknowledged_by: str | None = None,
    ) -> AcknowledgeResult:
        """Mark an alert as acknowledged. Acknowledging twice is a no-op.

        Raises:
            AlertNotFoundError: If the alert does not exist for the tenant.
        """
        query = (
            select(ContractAlert)
            .where(
                ContractAlert.tenant_id == ctx.tenant_id,
                ContractAlert.alert_id == alert_id,
            )
            .with_for_update()
        )
        alert = (await self._session.execute(query)).scalar_one_or_none()
        if alert is None:
            raise AlertNotFoundError(alert_id)

        if alert.acknowledged_at is not None:
            return AcknowledgeResult(
                alert_id=alert.alert_id,
                acknowledged_at=alert.acknowledged_at,
                already_acknowledged=True,
            )

        alert.acknowledged_at = self._clock()
        alert.acknowledged_by = acknowledged_by or ctx.user_id
        await self._session.flush()

        logger.info(
            "Alert acknowledged",
            extra={
                **ctx.log_extra(),
                "alert_id": str(alert_id),
                "contract_id": str(alert.contract_id),
                "alert_type": alert.alert_type.value,
            },
        )
        return AcknowledgeResult(alert_id=alert.alert_id, acknowledged_at=alert.acknowledged_at)

    async def count_candidates(
        self,
        ctx: TenantContext,
        alert_type: AlertType,
        days_ahead: int | None = None,
    ) -> int:
        """Count contracts inside an alert window without raising anything."""
        now = self._clock()
        days = self._window(days_ahead)
        cap = self.settings.max_overdue_days
        window = (
            renewal_window(now, days, cap)
            if alert_type is AlertType.RENEWAL
            else expiration_window(now, days, cap)
        )
        query = select(func.count()).select_from(Contract).where(
            Contract.tenant_id == ctx.tenant_id, window
        )
        return int((await self._session.execute(query)).scalar_one())

    def _window(self, days_ahead: int | None) -> int:
        days = self.settings.default_days_ahead if days_ahead is None else days_ahead
        if days < 0:
            msg = f"days_ahead must not be negative, got {days}"
            raise ValueError(msg)
        return days

    async def _raise(
        self,
        ctx: TenantContext,
        contract: Contract,
        alert_type: AlertType,
        due: datetime,
        now: datetime,
    ) -> ContractAlert | None:
        """Return the open alert for the contract, raising one if needed.

        Returns None when an acknowledged alert for the same due date is
        still in force.
        """
        open_alert = await self._open_alert(ctx, contract.contract_id, alert_type)
        if open_alert is not None:
            if open_alert.due_date != due:
                # Term moved (renewal, correction); keep the alert, track the date
                open_alert.due_date = due
            return open_alert

        if now < due and await self._acknowledged_for(ctx, contract.contract_id, alert_type, due):
            return None

        stmt = (
            insert(ContractAlert)
            .values(
                tenant_id=ctx.tenant_id,
                contract_id=contract.contract_id,
                alert_type=alert_type,
                due_date=due,
                raised_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["tenant_id", "contract_id", "alert_type"],
                index_where=ContractAlert.acknowledged_at.is_(None),
            )
            .returning(ContractAlert)
        )
        alert = (await self._session.execute(stmt)).scalar_one_or_none()
        if alert is None:
            # Lost the race to a concurrent raiser; its row is the open alert
            alert = await self._open_alert(ctx, contract.contract_id, alert_type)
        else:
            logger.info(
                "Alert raised",
                extra={
                    **ctx.log_extra(),
                    "alert_id": str(alert.alert_id),
                    "contract_id": str(contract.contract_id),
                    "alert_type": alert_type.value,
                    "due_date": due.isoformat(),
                },
            )
        return alert

    async def _open_alert(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        alert_type: AlertType,
    ) -> ContractAlert | None:
        query = select(ContractAlert).where(
            ContractAlert.tenant_id == ctx.tenant_id,
            ContractAlert.contract_id == contract_id,
            ContractAlert.alert_type == alert_type,
            ContractAlert.acknowledged_at.is_(None),
        )
        return (await self._session.execute(query)).scalar_one_or_none()

    async def _acknowledged_for(
        self,
        ctx: TenantContext,
        contract_id: uuid.UUID,
        alert_type: AlertType,
        due: datetime,
    ) -> bool:
        query = (
            select(ContractAlert.alert_id)
            .where(
                ContractAlert.tenant_id == ctx.tenant_id,
                ContractAlert.contract_id == contract_id,
                ContractAlert.alert_type == alert_type,
                ContractAlert.acknowledged_at.is_not(None),
                ContractAlert.due_date == due,
            )
            .limit(1)
        )
        return (await self._session.execute(query)).scalar_one_or_none() is not None

    def _to_record(self, alert: ContractAlert, contract: Contract, now: datetime) -> AlertRecord:
        days_left = days_until(alert.due_date, now)
        return AlertRecord(
            alert_id=alert.alert_id,
            contract_id=contract.contract_id,
            alert_type=alert.alert_type,
            due_date=alert.due_date,
            raised_at=alert.raised_at,
            acknowledged_at=alert.acknowledged_at,
            acknowledged_by=alert.acknowledged_by,
            days_until_due=days_left,
            level=alert_level(days_left, self.settings.urgent_threshold_days),
            contract_number=contract.contract_number,
            customer_id=contract.customer_id,
            status=contract.status,
            effective_expires_at=contract.effective_expires_at,
            renewal_window_days=contract.renewal_window_days,
        )
