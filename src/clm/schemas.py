"""Pydantic models for engine inputs and results.

These are the shapes the engine hands to its callers (an HTTP layer, a
webhook relay, a scheduler). ORM rows are converted with
``model_validate(row)``; nothing here touches the database.
"""

from __future__ import annotations

# NOTE: datetime and UUID must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003
from typing import Any, Self
from uuid import UUID  # noqa: TC003

from pydantic import BaseModel, ConfigDict, Field, model_validator

from clm.db.models.base import (
    ActorType,
    AlertLevel,
    AlertType,
    ContractStatus,
    LifecycleEventType,
    SignatureStatus,
)

# -----------------------------------------------------------------------------
# Inputs
# -----------------------------------------------------------------------------


class ContractFilters(BaseModel):
    """Filters accepted by list_contracts and get_lifecycle_stats.

    ``expires_within_days`` and ``renewal_within_days`` select exactly the
    contracts the expiration and renewal alerts would report for the same
    window.
    """

    status: list[ContractStatus] | None = Field(None, description="Any of these statuses")
    signature_status: list[SignatureStatus] | None = Field(
        None, description="Any of these signature statuses"
    )
    created_from: datetime | None = Field(None, description="created_at lower bound (inclusive)")
    created_to: datetime | None = Field(None, description="created_at upper bound (inclusive)")
    customer_id: UUID | None = None
    template_id: UUID | None = None
    expires_within_days: int | None = Field(None, ge=0, le=3650)
    renewal_within_days: int | None = Field(None, ge=0, le=3650)
    limit: int | None = Field(None, ge=1, le=1000)
    offset: int = Field(0, ge=0)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def check_date_range(self) -> Self:
        if (
            self.created_from is not None
            and self.created_to is not None
            and self.created_from > self.created_to
        ):
            msg = "created_from must not be after created_to"
            raise ValueError(msg)
        return self


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


class ContractSnapshot(BaseModel):
    """Lifecycle view of a contract."""

    model_config = ConfigDict(from_attributes=True)

    contract_id: UUID
    tenant_id: UUID
    contract_number: str | None = None
    customer_id: UUID | None = None
    template_id: UUID | None = None
    status: ContractStatus
    signature_status: SignatureStatus
    effective_expires_at: datetime | None = None
    renewal_window_days: int | None = None
    lifecycle_version: int
    status_changed_at: datetime | None = None
    last_event_at: datetime | None = None
    signed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class LifecycleEventRecord(BaseModel):
    """One entry of a contract's lifecycle log."""

    model_config = ConfigDict(from_attributes=True)

    event_id: UUID
    tenant_id: UUID
    contract_id: UUID
    sequence: int
    event_type: LifecycleEventType
    previous_status: ContractStatus | None = None
    new_status: ContractStatus
    previous_signature_status: SignatureStatus | None = None
    new_signature_status: SignatureStatus
    event_data: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = None
    actor_type: ActorType
    triggered_by: str | None = None
    created_at: datetime
    replayed: bool = Field(False, description="True if this is an earlier event returned on replay")


class AlertRecord(BaseModel):
    """A raised alert with the contract details needed to act on it."""

    alert_id: UUID
    contract_id: UUID
    alert_type: AlertType
    due_date: datetime
    raised_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    days_until_due: int
    level: AlertLevel
    contract_number: str | None = None
    customer_id: UUID | None = None
    status: ContractStatus
    effective_expires_at: datetime | None = None
    renewal_window_days: int | None = None


class AcknowledgeResult(BaseModel):
    success: bool = True
    alert_id: UUID
    acknowledged_at: datetime
    already_acknowledged: bool = False


class SweepSummary(BaseModel):
    """Outcome of one expiration sweep for a tenant."""

    tenant_id: UUID
    processed: int = 0
    failed: int = 0
    failed_ids: list[UUID] = Field(default_factory=list)
    skipped_due_to_lease: bool = False
    has_more: bool = False
    started_at: datetime
    finished_at: datetime


class StageDuration(BaseModel):
    status: ContractStatus
    count: int
    average_seconds: float
    p50_seconds: float
    p90_seconds: float


class MonthlyCount(BaseModel):
    month: str = Field(..., description="Calendar month, YYYY-MM")
    count: int


class LifecycleStats(BaseModel):
    """Aggregate lifecycle statistics for a tenant (optionally filtered)."""

    total_contracts: int
    active_contracts: int
    expired_contracts: int
    pending_signature: int
    fully_signed: int
    average_signing_time_days: float | None = Field(
        None, description="Mean days from creation to signature, None if nothing signed"
    )
    renewal_alerts: int
    expiration_alerts: int
    contracts_by_status: dict[ContractStatus, int]
    time_in_stage: list[StageDuration]
    monthly_creation_trend: list[MonthlyCount]
    generated_at: datetime


class ProjectionReport(BaseModel):
    """Result of replaying a contract's log against its stored columns."""

    contract_id: UUID
    consistent: bool
    mismatches: list[str] = Field(default_factory=list)
    stored_status: ContractStatus | None = None
    replayed_status: ContractStatus | None = None
    error: str | None = None
