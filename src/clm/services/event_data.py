"""Typed payloads for lifecycle events.

Each event type has its own payload model; the union is discriminated on
``event_type`` so a payload can never be stored against the wrong event.
Unknown keys are rejected. Callers pass a plain dict without the
discriminator; ``parse_event_data`` adds it before validation and strips it
again in ``to_storage``.
"""

from __future__ import annotations

# NOTE: datetime must remain at runtime for Pydantic validation
from datetime import datetime  # noqa: TC003
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from clm.core.errors import InvalidEventDataError
from clm.db.models.base import LifecycleEventType


class BaseEventData(BaseModel):
    """Fields accepted on every event."""

    note: str | None = Field(None, max_length=2000, description="Free-text note")
    override_reason: str | None = Field(
        None,
        max_length=2000,
        description="Why an administrator forced this status change",
    )

    model_config = ConfigDict(extra="forbid", frozen=True)


class CreatedData(BaseEventData):
    event_type: Literal["created"] = "created"
    source: str | None = Field(None, max_length=100, description="Origin of the contract")


class ApprovedData(BaseEventData):
    event_type: Literal["approved"] = "approved"
    approver: str | None = Field(None, max_length=255)
    comment: str | None = Field(None, max_length=2000)


class SentForSignatureData(BaseEventData):
    event_type: Literal["sent_for_signature"] = "sent_for_signature"
    signature_request_id: str | None = Field(None, max_length=255)
    signers: list[str] = Field(default_factory=list, max_length=100)


class PartiallySignedData(BaseEventData):
    """One signer (of several) has signed."""

    event_type: Literal["partially_signed"] = "partially_signed"
    signer_email: str | None = Field(None, max_length=255)
    signed_count: int | None = Field(None, ge=1)
    total_signers: int | None = Field(None, ge=1)

    @model_validator(mode="after")
    def check_counts(self) -> PartiallySignedData:
        if (
            self.signed_count is not None
            and self.total_signers is not None
            and self.signed_count >= self.total_signers
        ):
            msg = "signed_count must be lower than total_signers for a partial signature"
            raise ValueError(msg)
        return self


class FullySignedData(BaseEventData):
    event_type: Literal["fully_signed"] = "fully_signed"
    signer_email: str | None = Field(None, max_length=255)
    signature_request_id: str | None = Field(None, max_length=255)
    signed_at: datetime | None = None


class ExpiredData(BaseEventData):
    """Term elapsed. Written by the sweeper with ``auto_expired=True``."""

    event_type: Literal["expired"] = "expired"
    swept_at: datetime | None = None
    original_expiration: datetime | None = None
    auto_expired: bool = False


class RenewedData(BaseEventData):
    """Renewal started; may carry the new term."""

    event_type: Literal["renewed"] = "renewed"
    new_expires_at: datetime | None = None
    renewal_window_days: int | None = Field(None, ge=0, le=3650)


class CancelledData(BaseEventData):
    event_type: Literal["cancelled"] = "cancelled"
    reason: str | None = Field(None, max_length=2000)


class ArchivedData(BaseEventData):
    event_type: Literal["archived"] = "archived"
    reason: str | None = Field(None, max_length=2000)


EventData = Annotated[
    CreatedData
    | ApprovedData
    | SentForSignatureData
    | PartiallySignedData
    | FullySignedData
    | ExpiredData
    | RenewedData
    | CancelledData
    | ArchivedData,
    Field(discriminator="event_type"),
]

_event_data_adapter: TypeAdapter[EventData] = TypeAdapter(EventData)


def parse_event_data(
    event_type: LifecycleEventType,
    data: dict[str, Any] | None,
) -> BaseEventData:
    """Validate a raw payload against the model for ``event_type``.

    Args:
        event_type: Event the payload belongs to.
        data: Raw payload (may be None or empty).

    Returns:
        The validated payload model.

    Raises:
        InvalidEventDataError: If the payload has unknown keys, wrong types,
            or names a different event type.
    """
    payload = dict(data or {})
    declared = payload.pop("event_type", None)
    if declared is not None and declared != event_type.value:
        raise InvalidEventDataError(
            event_type.value,
            [f"event_type: payload declares {declared!r}"],
        )
    payload["event_type"] = event_type.value

    try:
        return _event_data_adapter.validate_python(payload)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            # Drop the union tag from the location ("renewed.new_expires_at")
            loc = ".".join(str(x) for x in error["loc"][1:]) or "payload"
            errors.append(f"{loc}: {error['msg']}")
        raise InvalidEventDataError(event_type.value, errors) from e


def to_storage(data: BaseEventData) -> dict[str, Any]:
    """Serialize a validated payload for the JSONB column."""
    return data.model_dump(mode="json", exclude_none=True, exclude={"event_type"})
