"""
Unit tests for request / assignment / offer status transitions.
"""
from dispatch_engine.schemas.schemas import (
    AssignmentStatusEnum as A,
    OfferStatusEnum as O,
    RequestStatusEnum as R,
)
from dispatch_engine.services.state_machine import (
    TERMINAL_REQUEST_STATUSES, is_valid_transition, sources_for,
)


class TestRequestStateMachine:
    def test_pending_to_dispatching(self):
        assert is_valid_transition(R.pending, R.dispatching)

    def test_pending_to_bidding(self):
        assert is_valid_transition(R.pending, R.bidding)

    def test_bidding_closes_then_falls_back(self):
        assert is_valid_transition(R.bidding, R.bidding_closed)
        assert is_valid_transition(R.bidding_closed, R.dispatching)

    def test_dispatching_outcomes(self):
        assert is_valid_transition(R.dispatching, R.accepted)
        assert is_valid_transition(R.dispatching, R.no_drivers_available)

    def test_accepted_to_cancelled_by_client(self):
        assert is_valid_transition(R.accepted, R.cancelled_by_client)

    def test_driver_cancel_returns_to_dispatching(self):
        assert is_valid_transition(R.accepted, R.dispatching)

    def test_trip_progress(self):
        assert is_valid_transition(R.accepted, R.in_progress)
        assert is_valid_transition(R.in_progress, R.completed)

    def test_terminal_statuses(self):
        assert TERMINAL_REQUEST_STATUSES == {
            R.completed, R.no_drivers_available, R.cancelled, R.cancelled_by_client,
        }
        for status in TERMINAL_REQUEST_STATUSES:
            assert not is_valid_transition(status, R.dispatching)

    def test_invalid_forward_skip(self):
        # Cannot start a trip nobody accepted
        assert not is_valid_transition(R.pending, R.in_progress)
        assert not is_valid_transition(R.bidding, R.dispatching)

    def test_in_progress_cannot_be_cancelled(self):
        assert not is_valid_transition(R.in_progress, R.cancelled)
        assert not is_valid_transition(R.in_progress, R.cancelled_by_client)

    def test_sources_for_cancelled(self):
        assert set(sources_for(R.cancelled)) == {R.pending, R.bidding, R.bidding_closed, R.dispatching}


class TestAssignmentStateMachine:
    def test_pending_has_four_exits(self):
        for target in (A.accepted, A.rejected, A.timed_out, A.cancelled):
            assert is_valid_transition(A.pending, target)

    def test_accepted_finishes_or_is_cancelled(self):
        assert is_valid_transition(A.accepted, A.completed)
        assert is_valid_transition(A.accepted, A.cancelled)

    def test_timed_out_is_terminal(self):
        assert not is_valid_transition(A.timed_out, A.accepted)


class TestOfferStateMachine:
    def test_pending_exits(self):
        for target in (O.accepted, O.rejected, O.expired, O.withdrawn):
            assert is_valid_transition(O.pending, target)

    def test_withdrawn_cannot_be_accepted(self):
        assert not is_valid_transition(O.withdrawn, O.accepted)

    def test_only_pending_leads_to_accepted(self):
        assert sources_for(O.accepted) == [O.pending]
