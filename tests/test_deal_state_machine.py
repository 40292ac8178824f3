"""
Deal state machine transition table tests
Every listed edge validates, everything else fails with Conflict
"""

import pytest

from models import DealStatus, TERMINAL_STATUSES
from utils.deal_state_machine import (
    DealEvent, DealStateValidator, FORCE_TARGETS_FORBIDDEN, TRANSITIONS,
)
from utils.exception_handler import Conflict, InvariantViolation

S = DealStatus

LISTED_EDGES = [
    (DealEvent.CREATE, S.CREATED, S.WAITING_FOR_SELLER_WALLET),
    (DealEvent.CREATE, S.CREATED, S.WAITING_FOR_BUYER_WALLET),
    (DealEvent.PROVIDE_WALLET, S.WAITING_FOR_SELLER_WALLET, S.WAITING_FOR_DEPOSIT),
    (DealEvent.PROVIDE_WALLET, S.WAITING_FOR_BUYER_WALLET, S.WAITING_FOR_SELLER_WALLET),
    (DealEvent.PROVIDE_WALLET, S.WAITING_FOR_BUYER_WALLET, S.WAITING_FOR_DEPOSIT),
    (DealEvent.DEPOSIT_DETECTED, S.WAITING_FOR_DEPOSIT, S.LOCKED),
    (DealEvent.DEADLINE_EXPIRED, S.WAITING_FOR_SELLER_WALLET, S.EXPIRED),
    (DealEvent.DEADLINE_EXPIRED, S.WAITING_FOR_BUYER_WALLET, S.EXPIRED),
    (DealEvent.DEADLINE_EXPIRED, S.WAITING_FOR_DEPOSIT, S.EXPIRED),
    (DealEvent.CANCEL, S.WAITING_FOR_SELLER_WALLET, S.CANCELLED),
    (DealEvent.CANCEL, S.WAITING_FOR_BUYER_WALLET, S.CANCELLED),
    (DealEvent.CANCEL, S.WAITING_FOR_DEPOSIT, S.CANCELLED),
    (DealEvent.SUBMIT_WORK, S.LOCKED, S.WORK_SUBMITTED),
    (DealEvent.SUBMIT_WORK, S.IN_PROGRESS, S.WORK_SUBMITTED),
    (DealEvent.OPEN_DISPUTE, S.LOCKED, S.DISPUTE),
    (DealEvent.OPEN_DISPUTE, S.IN_PROGRESS, S.DISPUTE),
    (DealEvent.OPEN_DISPUTE, S.WORK_SUBMITTED, S.DISPUTE),
    (DealEvent.CONFIRM, S.WORK_SUBMITTED, S.COMPLETED),
    (DealEvent.AUTO_RELEASE, S.WORK_SUBMITTED, S.COMPLETED),
    (DealEvent.RESOLVE, S.DISPUTE, S.RESOLVED),
    (DealEvent.CANCEL_DISPUTE, S.DISPUTE, S.LOCKED),
]


class TestTransitionTable:
    """Every transition in the lifecycle table is accepted"""

    @pytest.mark.parametrize("event,current,target", LISTED_EDGES)
    def test_listed_edge_is_valid(self, event, current, target):
        assert DealStateValidator.is_valid_transition(event, current, target)
        DealStateValidator.validate(event, current, target)

    def test_table_has_no_unlisted_edges(self):
        table_edges = {
            (event, source, target)
            for event, edges in TRANSITIONS.items()
            for source, targets in edges.items()
            for target in targets
        }
        assert table_edges == set(LISTED_EDGES)

    def test_every_unlisted_pair_is_a_conflict(self):
        listed = set(LISTED_EDGES)
        checked = 0
        for event in DealEvent:
            if event == DealEvent.ADMIN_FORCE:
                continue
            for current in DealStatus:
                for target in DealStatus:
                    if (event, current, target) in listed:
                        continue
                    with pytest.raises(Conflict) as exc_info:
                        DealStateValidator.validate(event, current, target)
                    assert exc_info.value.current == current.value
                    assert exc_info.value.target == target.value
                    checked += 1
        assert checked > 1000

    def test_string_statuses_are_accepted(self):
        assert DealStateValidator.is_valid_transition(DealEvent.DEPOSIT_DETECTED, "waiting_for_deposit", "locked")

    def test_unknown_status_is_invariant_violation(self):
        with pytest.raises(InvariantViolation):
            DealStateValidator.validate(DealEvent.CONFIRM, "bogus", "completed")


class TestTerminalStates:
    @pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_states_have_no_exits(self, status):
        assert DealStateValidator.get_valid_transitions(status) == set()
        for event in DealEvent:
            assert not DealStateValidator.accepts(event, status)

    def test_in_progress_behaves_like_locked_for_work_events(self):
        assert DealStateValidator.accepts(DealEvent.SUBMIT_WORK, S.IN_PROGRESS)
        assert DealStateValidator.accepts(DealEvent.OPEN_DISPUTE, S.IN_PROGRESS)
        assert not DealStateValidator.accepts(DealEvent.CONFIRM, S.IN_PROGRESS)

    def test_require_raises_conflict_with_event_name(self):
        with pytest.raises(Conflict) as exc_info:
            DealStateValidator.require(DealEvent.CONFIRM, S.LOCKED)
        assert "confirm" in exc_info.value.message


class TestAdminForce:
    def test_force_from_any_non_terminal_status(self):
        for current in DealStatus:
            if current in TERMINAL_STATUSES:
                continue
            assert DealStateValidator.is_valid_transition(DealEvent.ADMIN_FORCE, current, S.CANCELLED)

    def test_force_never_leaves_a_terminal_status(self):
        for current in TERMINAL_STATUSES:
            with pytest.raises(Conflict):
                DealStateValidator.validate(DealEvent.ADMIN_FORCE, current, S.LOCKED)

    def test_force_to_same_status_rejected(self):
        assert not DealStateValidator.is_valid_transition(DealEvent.ADMIN_FORCE, S.LOCKED, S.LOCKED)

    @pytest.mark.parametrize("target", sorted(FORCE_TARGETS_FORBIDDEN, key=lambda s: s.value))
    def test_forbidden_force_targets(self, target):
        assert not DealStateValidator.is_valid_transition(DealEvent.ADMIN_FORCE, S.LOCKED, target)

    def test_refunded_reachable_only_by_force(self):
        reachable = set()
        for current in DealStatus:
            reachable |= DealStateValidator.get_valid_transitions(current)
        assert S.REFUNDED not in reachable
        assert S.IN_PROGRESS not in reachable
        assert DealStateValidator.is_valid_transition(DealEvent.ADMIN_FORCE, S.LOCKED, S.REFUNDED)
