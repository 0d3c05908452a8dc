"""
Tests for the appointment state machine.
"""
import pytest

from storage.errors import InvalidStateError, ValidationError
from storage.models import AppointmentStatus
from scheduling.transitions import (
    can_transition,
    ensure_transition,
    is_terminal,
    next_states,
    parse_status,
)

S = AppointmentStatus


class TestTransitionTable:
    """The edges of the lifecycle."""

    @pytest.mark.parametrize("target", ["scheduled", "rejected", "cancelled"])
    def test_pending_edges(self, target):
        assert can_transition("pending", target)

    @pytest.mark.parametrize("target", ["completed", "cancelled", "rescheduled"])
    def test_scheduled_edges(self, target):
        assert can_transition(S.scheduled, target)

    def test_rescheduled_only_returns_to_scheduled(self):
        assert next_states("rescheduled") == frozenset({S.scheduled})

    @pytest.mark.parametrize("status", ["completed", "rejected", "cancelled"])
    def test_terminal_states(self, status):
        assert is_terminal(status)
        assert next_states(status) == frozenset()

    def test_pending_cannot_complete(self):
        assert not can_transition("pending", "completed")

    def test_scheduled_cannot_go_back_to_pending(self):
        assert not can_transition("scheduled", "pending")

    def test_every_status_has_an_entry(self):
        for status in S:
            next_states(status)


class TestEnsureTransition:

    def test_legal_edge_passes(self):
        ensure_transition("pending", "scheduled")

    def test_illegal_edge_reports_both_states(self):
        with pytest.raises(InvalidStateError) as exc_info:
            ensure_transition("completed", "cancelled")
        assert exc_info.value.current == "completed"
        assert exc_info.value.target == "cancelled"

    def test_unknown_status_is_a_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_status("archived")
        assert "status" in exc_info.value.errors
