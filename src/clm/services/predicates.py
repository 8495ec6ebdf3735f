"""SQL predicates shared by alerts, listing filters and the sweeper.

The alert engine and the query façade build their window conditions from
the same functions here, so "contracts expiring within N days" means the
same thing everywhere.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import and_, func

from clm.db.models.contracts import Contract
from clm.services.transitions import CLOSED_STATUSES, EXPIRABLE_STATUSES, RENEWABLE_STATUSES

if TYPE_CHECKING:
    from sqlalchemy.sql.elements import ColumnElement

    from clm.schemas import ContractFilters


def renewal_due_at() -> ColumnElement[datetime]:
    """SQL expression: when renewal becomes due (expiry minus renewal window)."""
    return Contract.effective_expires_at - func.make_interval(
        0, 0, 0, Contract.renewal_window_days
    )


def renewal_due_date(
    effective_expires_at: datetime | None,
    renewal_window_days: int | None,
) -> datetime | None:
    """Python counterpart of renewal_due_at for a loaded contract."""
    if effective_expires_at is None or renewal_window_days is None:
        return None
    return effective_expires_at - timedelta(days=renewal_window_days)


def renewal_window(
    now: datetime,
    days_ahead: int,
    max_overdue_days: int | None = None,
) -> ColumnElement[bool]:
    """Contracts whose renewal falls due within ``days_ahead`` days.

    Only SIGNED or EXPIRED contracts with a renewal window are eligible.
    Renewals already past due stay selected (they are overdue), unless
    ``max_overdue_days`` caps how far back to look.
    """
    due = renewal_due_at()
    clauses = [
        Contract.status.in_(RENEWABLE_STATUSES),
        Contract.renewal_window_days.is_not(None),
        Contract.effective_expires_at.is_not(None),
        due <= now + timedelta(days=days_ahead),
    ]
    if max_overdue_days is not None:
        clauses.append(due >= now - timedelta(days=max_overdue_days))
    return and_(*clauses)


def expiration_window(
    now: datetime,
    days_ahead: int,
    max_overdue_days: int | None = None,
) -> ColumnElement[bool]:
    """Open contracts whose term ends within ``days_ahead`` days, or already ended."""
    clauses = [
        Contract.status.not_in(CLOSED_STATUSES),
        Contract.effective_expires_at.is_not(None),
        Contract.effective_expires_at <= now + timedelta(days=days_ahead),
    ]
    if max_overdue_days is not None:
        clauses.append(Contract.effective_expires_at >= now - timedelta(days=max_overdue_days))
    return and_(*clauses)


def overdue(now: datetime) -> ColumnElement[bool]:
    """Open contracts whose term has elapsed."""
    return and_(
        Contract.status.not_in(CLOSED_STATUSES),
        Contract.effective_expires_at.is_not(None),
        Contract.effective_expires_at <= now,
    )


def sweep_due(now: datetime) -> ColumnElement[bool]:
    """Overdue contracts the sweeper can move to EXPIRED."""
    return and_(
        Contract.status.in_(EXPIRABLE_STATUSES),
        Contract.effective_expires_at.is_not(None),
        Contract.effective_expires_at <= now,
    )


def sweep_blocked(now: datetime) -> ColumnElement[bool]:
    """Overdue contracts whose status has no transition to EXPIRED."""
    return and_(
        Contract.status.not_in(CLOSED_STATUSES | EXPIRABLE_STATUSES),
        Contract.effective_expires_at.is_not(None),
        Contract.effective_expires_at <= now,
    )


def contract_filter_clauses(
    filters: ContractFilters | None,
    now: datetime,
) -> list[ColumnElement[bool]]:
    """Translate listing filters into WHERE clauses (tenant scope not included)."""
    if filters is None:
        return []

    clauses: list[ColumnElement[bool]] = []
    if filters.status:
        clauses.append(Contract.status.in_(filters.status))
    if filters.signature_status:
        clauses.append(Contract.signature_status.in_(filters.signature_status))
    if filters.created_from is not None:
        clauses.append(Contract.created_at >= filters.created_from)
    if filters.created_to is not None:
        clauses.append(Contract.created_at <= filters.created_to)
    if filters.customer_id is not None:
        clauses.append(Contract.customer_id == filters.customer_id)
    if filters.template_id is not None:
        clauses.append(Contract.template_id == filters.template_id)
    if filters.expires_within_days is not None:
        clauses.append(expiration_window(now, filters.expires_within_days))
    if filters.renewal_within_days is not None:
        clauses.append(renewal_window(now, filters.renewal_within_days))
    return clauses
