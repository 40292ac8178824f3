"""
Deal State Machine
Transition table for the deal lifecycle, keyed by the event that drives it
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set, Union

from models import DealStatus, TERMINAL_STATUSES, WAITING_STATUSES
from utils.exception_handler import Conflict, InvariantViolation

logger = logging.getLogger(__name__)


class DealEvent(Enum):
    """Events accepted by the deal lifecycle engine"""

    CREATE = "create"  # created -> waiting_for_*_wallet
    PROVIDE_WALLET = "provide_wallet"  # waiting_for_*_wallet -> next waiting state
    DEPOSIT_DETECTED = "deposit_detected"  # waiting_for_deposit -> locked
    DEADLINE_EXPIRED = "deadline_expired"  # waiting_for_* -> expired
    CANCEL = "cancel"  # waiting_for_* -> cancelled
    SUBMIT_WORK = "submit_work"  # locked -> work_submitted
    OPEN_DISPUTE = "open_dispute"  # locked/work_submitted -> dispute
    CONFIRM = "confirm"  # work_submitted -> completed
    AUTO_RELEASE = "auto_release"  # work_submitted -> completed after the acceptance window
    RESOLVE = "resolve"  # dispute -> resolved
    CANCEL_DISPUTE = "cancel_dispute"  # dispute -> locked
    ADMIN_FORCE = "admin_force"  # any non-terminal -> target


S = DealStatus


def _from_waiting(target: DealStatus) -> Dict[DealStatus, FrozenSet[DealStatus]]:
    return {status: frozenset({target}) for status in WAITING_STATUSES}


# in_progress is only produced by admin force; it accepts the same work events as locked
TRANSITIONS: Dict[DealEvent, Dict[DealStatus, FrozenSet[DealStatus]]] = {
    DealEvent.CREATE: {
        S.CREATED: frozenset({S.WAITING_FOR_SELLER_WALLET, S.WAITING_FOR_BUYER_WALLET}),
    },
    DealEvent.PROVIDE_WALLET: {
        S.WAITING_FOR_SELLER_WALLET: frozenset({S.WAITING_FOR_DEPOSIT}),
        S.WAITING_FOR_BUYER_WALLET: frozenset({S.WAITING_FOR_SELLER_WALLET, S.WAITING_FOR_DEPOSIT}),
    },
    DealEvent.DEPOSIT_DETECTED: {
        S.WAITING_FOR_DEPOSIT: frozenset({S.LOCKED}),
    },
    DealEvent.DEADLINE_EXPIRED: _from_waiting(S.EXPIRED),
    DealEvent.CANCEL: _from_waiting(S.CANCELLED),
    DealEvent.SUBMIT_WORK: {
        S.LOCKED: frozenset({S.WORK_SUBMITTED}),
        S.IN_PROGRESS: frozenset({S.WORK_SUBMITTED}),
    },
    DealEvent.OPEN_DISPUTE: {
        S.LOCKED: frozenset({S.DISPUTE}),
        S.IN_PROGRESS: frozenset({S.DISPUTE}),
        S.WORK_SUBMITTED: frozenset({S.DISPUTE}),
    },
    DealEvent.CONFIRM: {
        S.WORK_SUBMITTED: frozenset({S.COMPLETED}),
    },
    DealEvent.AUTO_RELEASE: {
        S.WORK_SUBMITTED: frozenset({S.COMPLETED}),
    },
    DealEvent.RESOLVE: {
        S.DISPUTE: frozenset({S.RESOLVED}),
    },
    DealEvent.CANCEL_DISPUTE: {
        S.DISPUTE: frozenset({S.LOCKED}),
    },
}

# Force targets that only make sense once the deposit has landed
FORCE_TARGETS_REQUIRING_DEPOSIT = frozenset({
    S.LOCKED, S.IN_PROGRESS, S.WORK_SUBMITTED, S.COMPLETED, S.RESOLVED, S.REFUNDED,
})

# A dispute needs an opener and a reason, so it is never a force target
FORCE_TARGETS_FORBIDDEN = frozenset({S.CREATED, S.DISPUTE})


def _flatten(table) -> Dict[DealStatus, Set[DealStatus]]:
    graph = {status: set() for status in DealStatus}
    for edges in table.values():
        for source, targets in edges.items():
            graph[source].update(targets)
    return graph


def _coerce(status: Union[str, DealStatus, None]) -> Optional[DealStatus]:
    if status is None or isinstance(status, DealStatus):
        return status
    try:
        return DealStatus(status)
    except ValueError:
        raise InvariantViolation(f"Unknown deal status: {status}")


class DealStateValidator:
    """Validates deal transitions against the lifecycle table"""

    # Flattened status graph over all user and system events
    VALID_TRANSITIONS: Dict[DealStatus, Set[DealStatus]] = _flatten(TRANSITIONS)

    @classmethod
    def is_valid_transition(
        cls, event: DealEvent, current_status: Union[str, DealStatus], new_status: Union[str, DealStatus]
    ) -> bool:
        current = _coerce(current_status)
        target = _coerce(new_status)
        if event == DealEvent.ADMIN_FORCE:
            return current not in TERMINAL_STATUSES and target != current and target not in FORCE_TARGETS_FORBIDDEN
        return target in TRANSITIONS.get(event, {}).get(current, frozenset())

    @classmethod
    def validate(
        cls, event: DealEvent, current_status: Union[str, DealStatus], new_status: Union[str, DealStatus]
    ) -> None:
        """Raise Conflict unless the event may move the deal from current to new status"""
        if not cls.is_valid_transition(event, current_status, new_status):
            current = _coerce(current_status)
            target = _coerce(new_status)
            logger.warning(f"⚠️ INVALID_TRANSITION: {event.value} {current.value} -> {target.value}")
            raise Conflict(current.value, target.value)

    @classmethod
    def accepts(cls, event: DealEvent, current_status: Union[str, DealStatus]) -> bool:
        """True if the event has any edge out of the current status"""
        current = _coerce(current_status)
        if event == DealEvent.ADMIN_FORCE:
            return current not in TERMINAL_STATUSES
        return current in TRANSITIONS.get(event, {})

    @classmethod
    def require(cls, event: DealEvent, current_status: Union[str, DealStatus], target_hint: str = "") -> None:
        """Raise Conflict when the event is not accepted in the current status"""
        if not cls.accepts(event, current_status):
            current = _coerce(current_status)
            raise Conflict(current.value, target_hint or event.value,
                           f"Event {event.value} is not allowed in status {current.value}")

    @classmethod
    def get_valid_transitions(cls, current_status: Union[str, DealStatus]) -> Set[DealStatus]:
        return set(cls.VALID_TRANSITIONS.get(_coerce(current_status), set()))
