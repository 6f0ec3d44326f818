import math
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional, Set

from ..errors import ValidationError
from ..models.help_request import (
    HelpOffer,
    HelpRequest,
    NewHelpRequest,
    OfferChange,
    OfferOutcome,
    OfferStatus,
    RequestStatus,
)
from ..models.user import User, UserStats

# Community points awarded per action, used by user stats
POINTS_PER_OFFER = 10
POINTS_PER_REQUEST = 5


class HelpStore(ABC):
    """Persistence contract for requests, offers and users.

    Composite operations (offer_help, set_offer_status, update_request_status)
    are atomic: either every effect is visible or none is.
    """

    mode: str = "primary"

    def close(self) -> None:
        """Release connections; called on application shutdown."""

    @abstractmethod
    def ping(self) -> bool:
        ...

    @abstractmethod
    def upsert_user(self, user_id: str, email: str, name: str) -> User:
        ...

    @abstractmethod
    def create_request(self, data: NewHelpRequest) -> HelpRequest:
        ...

    @abstractmethod
    def get_request(self, request_id: str) -> Optional[HelpRequest]:
        ...

    @abstractmethod
    def get_active_requests(self, since: datetime) -> List[HelpRequest]:
        """Requests created after `since`, not terminal and not flagged,
        newest first, with helper counts computed at read time."""

    @abstractmethod
    def offer_help(
        self, request_id: str, helper_id: str, helper_name: str, helper_email: Optional[str] = None
    ) -> OfferOutcome:
        """Insert the offer (no-op if the pair exists), refresh the helper
        count and advance Open to In Progress, all in one transaction."""

    @abstractmethod
    def set_offer_status(
        self, request_id: str, helper_id: str, status: OfferStatus, author_id: str
    ) -> OfferChange:
        ...

    @abstractmethod
    def update_request_status(
        self,
        request_id: str,
        status: RequestStatus,
        author_id: str,
        expected: RequestStatus,
    ) -> Optional[HelpRequest]:
        """Compare-and-set: only writes when the row belongs to `author_id`
        and is still in `expected`. Returns None when nothing was written."""

    @abstractmethod
    def list_offers(self, request_id: str) -> List[HelpOffer]:
        ...

    @abstractmethod
    def get_offer(self, request_id: str, helper_id: str) -> Optional[HelpOffer]:
        ...

    @abstractmethod
    def offered_request_ids(self, helper_id: str, request_ids: Iterable[str]) -> Set[str]:
        ...

    @abstractmethod
    def user_stats(self, user_id: str) -> UserStats:
        ...


def check_coordinates(latitude: float, longitude: float) -> None:
    """Reject non-numeric, NaN or infinite coordinates instead of storing them."""
    problems = {}
    for name, value in (("latitude", latitude), ("longitude", longitude)):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            problems[name] = "must be a finite number"
    if problems:
        raise ValidationError(problems)
