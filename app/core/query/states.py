from enum import Enum
from typing import Dict, FrozenSet, Union

from app.core.exceptions import ConflictError


class RequestStatus(str, Enum):
    """Request lifecycle status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    FAILED = "failed"


# The only edges a request may follow. APPROVED is the claimed state held
# while the approved operation runs; the creation path writes EXECUTED or
# FAILED straight from PENDING for auto-executed reads.
TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset(
        {
            RequestStatus.APPROVED,
            RequestStatus.REJECTED,
            RequestStatus.EXECUTED,
            RequestStatus.FAILED,
        }
    ),
    RequestStatus.APPROVED: frozenset({RequestStatus.EXECUTED, RequestStatus.FAILED}),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.EXECUTED: frozenset(),
    RequestStatus.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)

# Terminal states a developer may resubmit from
RESUBMITTABLE_STATES = frozenset({RequestStatus.REJECTED, RequestStatus.FAILED})


def can_transition(current: Union[str, RequestStatus], target: RequestStatus) -> bool:
    return RequestStatus(target) in TRANSITIONS[RequestStatus(current)]


def ensure_transition(current: Union[str, RequestStatus], target: RequestStatus):
    """Raise ConflictError unless current -> target is an allowed edge."""
    current = RequestStatus(current)
    if not can_transition(current, target):
        raise ConflictError(
            f"Request is already {current.value} and cannot become {RequestStatus(target).value}",
            current_status=current.value,
        )
