"""Tests for the status projector.

Tests cover:
- Folding a log into lifecycle state
- Chain checks (sequence gaps, previous status mismatches)
- apply_event on the contract row, including renewal terms
- Time-in-stage intervals and duration summaries
- StatusProjector.verify against stored columns
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from clm.core.errors import ContractNotFoundError
from clm.db.models.base import ContractStatus, LifecycleEventType, SignatureStatus
from clm.services.projector import (
    ProjectionError,
    StatusProjector,
    apply_event,
    percentile,
    project,
    stage_intervals,
    state_of,
    summarize_durations,
)
from tests.factories import (
    BASE_TIME,
    make_contract,
    make_event,
    make_history,
    mock_result,
    tenant_ctx,
)

S = ContractStatus
E = LifecycleEventType
Sig = SignatureStatus


class TestProject:
    """Tests for replaying a full log."""

    def test_empty_log(self):
        assert project([]) is None

    def test_signed_history(self):
        contract_id = uuid4()
        events = make_history(contract_id)

        state = project(events)

        assert state.status is S.SIGNED
        assert state.signature_status is Sig.FULLY_SIGNED
        assert state.version == 5
        assert state.status_changed_at == BASE_TIME + timedelta(days=6)
        assert state.signed_at == BASE_TIME + timedelta(days=6)
        assert state.last_event_at == BASE_TIME + timedelta(days=6)

    def test_signature_only_event_keeps_status_changed_at(self):
        """A partial signature does not count as a status change."""
        contract_id = uuid4()
        events = make_history(contract_id)[:4]
        events.append(
            make_event(
                contract_id,
                5,
                E.PARTIALLY_SIGNED,
                S.SENT,
                S.SENT,
                created_at=BASE_TIME + timedelta(days=5),
                new_signature_status=Sig.PARTIALLY_SIGNED,
            )
        )

        state = project(events)

        assert state.status is S.SENT
        assert state.signature_status is Sig.PARTIALLY_SIGNED
        assert state.status_changed_at == BASE_TIME + timedelta(days=4)
        assert state.last_event_at == BASE_TIME + timedelta(days=5)

    def test_sequence_gap_detected(self):
        contract_id = uuid4()
        events = make_history(contract_id)
        del events[2]

        with pytest.raises(ProjectionError, match="sequence"):
            project(events)

    def test_broken_previous_status_detected(self):
        """Each event must start where the previous one ended."""
        contract_id = uuid4()
        events = make_history(contract_id)[:2]
        events.append(make_event(contract_id, 3, E.SENT_FOR_SIGNATURE, S.APPROVED, S.SENT))

        with pytest.raises(ProjectionError, match="starts from"):
            project(events)

    def test_first_event_must_have_no_previous_status(self):
        contract_id = uuid4()
        with pytest.raises(ProjectionError):
            project([make_event(contract_id, 1, E.CREATED, S.DRAFT, S.PENDING_APPROVAL)])


class TestApplyEvent:
    """Tests for folding a new event onto the contract row."""

    def test_first_event_on_new_contract(self):
        contract = make_contract(lifecycle_version=0, last_event_at=None, status_changed_at=None)
        event = make_event(contract.contract_id, 1, E.CREATED, None, S.DRAFT)

        apply_event(contract, event)

        assert contract.status is S.DRAFT
        assert contract.lifecycle_version == 1
        assert contract.status_changed_at == BASE_TIME
        assert contract.last_event_at == BASE_TIME

    def test_signed_sets_signed_at(self):
        when = BASE_TIME + timedelta(days=2)
        contract = make_contract(S.SENT, Sig.PARTIALLY_SIGNED, lifecycle_version=4)
        event = make_event(
            contract.contract_id,
            5,
            E.FULLY_SIGNED,
            S.SENT,
            S.SIGNED,
            created_at=when,
            previous_signature_status=Sig.PARTIALLY_SIGNED,
            new_signature_status=Sig.FULLY_SIGNED,
        )

        apply_event(contract, event)

        assert contract.status is S.SIGNED
        assert contract.signature_status is Sig.FULLY_SIGNED
        assert contract.signed_at == when
        assert contract.updated_at == when

    def test_renewal_updates_term(self):
        contract = make_contract(
            S.EXPIRED,
            Sig.FULLY_SIGNED,
            lifecycle_version=6,
            effective_expires_at=BASE_TIME,
            renewal_window_days=30,
        )
        event = make_event(
            contract.contract_id,
            7,
            E.RENEWED,
            S.EXPIRED,
            S.RENEWED,
            previous_signature_status=Sig.FULLY_SIGNED,
            new_signature_status=Sig.FULLY_SIGNED,
            event_data={"new_expires_at": "2027-03-01T00:00:00+00:00", "renewal_window_days": 45},
        )

        apply_event(contract, event)

        assert contract.status is S.RENEWED
        assert contract.effective_expires_at == datetime(2027, 3, 1, tzinfo=UTC)
        assert contract.renewal_window_days == 45

    def test_renewal_without_term_keeps_expiry(self):
        contract = make_contract(S.EXPIRED, lifecycle_version=3, effective_expires_at=BASE_TIME)
        event = make_event(contract.contract_id, 4, E.RENEWED, S.EXPIRED, S.RENEWED)

        apply_event(contract, event)

        assert contract.effective_expires_at == BASE_TIME

    def test_out_of_sequence_event_rejected(self):
        contract = make_contract(S.PENDING_APPROVAL, lifecycle_version=2)
        event = make_event(contract.contract_id, 5, E.APPROVED, S.PENDING_APPROVAL, S.APPROVED)

        with pytest.raises(ProjectionError):
            apply_event(contract, event)

    def test_state_of_unlogged_contract(self):
        assert state_of(make_contract(lifecycle_version=0)) is None


class TestStageIntervals:
    """Tests for time-in-stage computation."""

    def test_intervals_follow_status_changes(self):
        events = make_history(uuid4())
        now = BASE_TIME + timedelta(days=10)

        intervals = stage_intervals(events, now)

        assert [i.status for i in intervals] == [
            S.DRAFT,
            S.PENDING_APPROVAL,
            S.APPROVED,
            S.SENT,
            S.SIGNED,
        ]
        assert intervals[1].duration_seconds == timedelta(days=2).total_seconds()
        assert intervals[-1].exited_at is None
        assert intervals[-1].duration_seconds == timedelta(days=4).total_seconds()

    def test_signature_events_do_not_split_stage(self):
        contract_id = uuid4()
        events = make_history(contract_id)[:4]
        events.append(
            make_event(
                contract_id,
                5,
                E.PARTIALLY_SIGNED,
                S.SENT,
                S.SENT,
                created_at=BASE_TIME + timedelta(days=5),
            )
        )

        intervals = stage_intervals(events, BASE_TIME + timedelta(days=8))

        assert intervals[-1].status is S.SENT
        assert intervals[-1].entered_at == BASE_TIME + timedelta(days=4)

    def test_empty_log(self):
        assert stage_intervals([], BASE_TIME) == []


class TestDurationSummary:
    def test_percentile_interpolates(self):
        values = [10.0, 20.0, 30.0, 40.0]
        assert percentile(values, 0.5) == 25.0
        assert percentile(values, 0.0) == 10.0
        assert percentile(values, 1.0) == 40.0
        assert percentile([], 0.5) == 0.0
        assert percentile([7.0], 0.9) == 7.0

    def test_summarize(self):
        summary = summarize_durations([30.0, 10.0, 20.0])

        assert summary.count == 3
        assert summary.average_seconds == 20.0
        assert summary.p50_seconds == 20.0
        assert summary.p90_seconds == pytest.approx(28.0)

    def test_summarize_empty(self):
        assert summarize_durations([]).count == 0


class TestStatusProjector:
    """Tests for comparing stored columns with a replay."""

    @pytest.mark.asyncio
    async def test_consistent_contract(self):
        contract_id = uuid4()
        events = make_history(contract_id)
        contract = make_contract(S.SIGNED, Sig.FULLY_SIGNED, contract_id=contract_id)
        apply_state(contract, project(events))

        check = await StatusProjector(create_mock_session(contract, events)).verify(
            tenant_ctx(), contract_id
        )

        assert check.consistent
        assert check.mismatches == ()
        assert check.replayed.status is S.SIGNED

    @pytest.mark.asyncio
    async def test_drifted_status_reported(self):
        contract_id = uuid4()
        events = make_history(contract_id)
        contract = make_contract(S.SIGNED, Sig.FULLY_SIGNED, contract_id=contract_id)
        apply_state(contract, project(events))
        contract.status = S.EXPIRED

        check = await StatusProjector(create_mock_session(contract, events)).verify(
            tenant_ctx(), contract_id
        )

        assert not check.consistent
        assert check.mismatches == ("status",)

    @pytest.mark.asyncio
    async def test_broken_chain_reported(self):
        contract_id = uuid4()
        events = make_history(contract_id)
        del events[1]
        contract = make_contract(S.SIGNED, Sig.FULLY_SIGNED, contract_id=contract_id)

        check = await StatusProjector(create_mock_session(contract, events)).verify(
            tenant_ctx(), contract_id
        )

        assert not check.consistent
        assert check.replayed is None
        assert "sequence" in check.error

    @pytest.mark.asyncio
    async def test_missing_contract(self):
        with pytest.raises(ContractNotFoundError):
            await StatusProjector(create_mock_session(None, [])).verify(tenant_ctx(), uuid4())


# =============================================================================
# Helper Functions
# =============================================================================


def apply_state(contract, state):
    """Copy a replayed state onto a contract's stored columns."""
    contract.status = state.status
    contract.signature_status = state.signature_status
    contract.lifecycle_version = state.version
    contract.status_changed_at = state.status_changed_at
    contract.last_event_at = state.last_event_at
    contract.signed_at = state.signed_at


def create_mock_session(contract, events):
    """Create a mock session answering the contract lookup then the log query."""
    session = AsyncMock()
    session.execute = AsyncMock(
        side_effect=[mock_result(scalar=contract), mock_result(scalars=events)]
    )
    return session
