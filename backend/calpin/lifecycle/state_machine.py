"""
Help-request lifecycle.

    Open --first offer--> In Progress --author--> Pending Completion --author--> Completed
    {Open, In Progress, Pending Completion} --author cancels--> Cancelled

No backward transitions. Completed and Cancelled are terminal and accept no
further offers. Both stores call into this module from inside their
transaction (or lock), so the rules hold in degraded mode as well.
"""

from datetime import datetime
from typing import Dict, FrozenSet

from ..errors import InvalidTransition
from ..models.help_request import HelpRequest, OfferStatus, RequestStatus


# Status changes an author may request explicitly.
# Open -> In Progress is system-driven (first offer), never requested directly.
AUTHOR_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.OPEN: frozenset({RequestStatus.CANCELLED}),
    RequestStatus.IN_PROGRESS: frozenset(
        {RequestStatus.PENDING_COMPLETION, RequestStatus.CANCELLED}
    ),
    RequestStatus.PENDING_COMPLETION: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.CANCELLED}
    ),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

OFFER_TRANSITIONS: Dict[OfferStatus, FrozenSet[OfferStatus]] = {
    OfferStatus.ACTIVE: frozenset(
        {OfferStatus.ACCEPTED, OfferStatus.REJECTED, OfferStatus.CANCELLED}
    ),
    OfferStatus.ACCEPTED: frozenset({OfferStatus.COMPLETED, OfferStatus.CANCELLED}),
    OfferStatus.REJECTED: frozenset(),
    OfferStatus.COMPLETED: frozenset(),
    OfferStatus.CANCELLED: frozenset(),
}


def check_status_change(current: RequestStatus, requested: RequestStatus) -> bool:
    """Validate an author-requested status change.

    Returns False when the request is already in the requested state (a retry
    is a no-op), True when a write is needed. Raises InvalidTransition otherwise.
    """
    if current == requested:
        return False
    if requested not in AUTHOR_TRANSITIONS[current]:
        raise InvalidTransition(current.value, requested.value)
    return True


def status_after_offer(current: RequestStatus) -> RequestStatus:
    """Status a request moves to when a helper offers or is accepted."""
    if current.is_terminal:
        raise InvalidTransition(current.value, RequestStatus.IN_PROGRESS.value)
    if current == RequestStatus.OPEN:
        return RequestStatus.IN_PROGRESS
    return current


def check_offer_change(
    current: OfferStatus, requested: OfferStatus, request_status: RequestStatus
) -> bool:
    """Validate an author-driven offer change (accept or reject).

    Returns False for a repeat of the current state, True when a write is needed.
    """
    if current == requested:
        return False
    if request_status.is_terminal:
        raise InvalidTransition(
            current.value,
            requested.value,
            subject=f"offer on a {request_status.value.lower()} request",
        )
    if requested not in OFFER_TRANSITIONS[current]:
        raise InvalidTransition(current.value, requested.value, subject="offer")
    return True


def is_listed(request: HelpRequest, cutoff: datetime) -> bool:
    """Visibility filter for listings: recent, not terminal, not flagged."""
    return (
        request.created_at > cutoff
        and not request.status.is_terminal
        and not request.is_flagged
    )
