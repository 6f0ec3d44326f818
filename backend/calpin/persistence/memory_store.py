import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple
from uuid import uuid4

from ..errors import Forbidden, NotFound, SelfOfferForbidden
from ..lifecycle import state_machine
from ..models.help_request import (
    COUNTED_OFFER_STATUSES,
    HelpOffer,
    HelpRequest,
    NewHelpRequest,
    OfferChange,
    OfferOutcome,
    OfferStatus,
    RequestStatus,
    utcnow,
)
from ..models.user import User, UserStats
from .gateway import POINTS_PER_OFFER, POINTS_PER_REQUEST, HelpStore, check_coordinates


class InMemoryHelpStore(HelpStore):
    """Degraded-mode store held in process memory.

    A single lock covers every read-modify-write sequence, standing in for the
    database transaction: the duplicate-offer check, the insert, the helper
    recount and the status change all happen under one acquisition.
    """

    mode = "fallback"

    def __init__(self):
        self._lock = threading.RLock()
        self._users: Dict[str, User] = {}
        self._requests: Dict[str, HelpRequest] = {}
        self._offers: Dict[Tuple[str, str], HelpOffer] = {}

    def ping(self) -> bool:
        return True

    def upsert_user(self, user_id: str, email: str, name: str) -> User:
        now = utcnow()
        with self._lock:
            existing = self._users.get(user_id)
            created_at = existing.created_at if existing else now
            user = User(id=user_id, email=email, name=name, created_at=created_at, last_seen_at=now)
            self._users[user_id] = user
            return user.model_copy()

    def create_request(self, data: NewHelpRequest) -> HelpRequest:
        check_coordinates(data.latitude, data.longitude)
        now = utcnow()
        request = HelpRequest(
            id=str(uuid4()),
            status=RequestStatus.OPEN,
            helpers_count=0,
            created_at=now,
            updated_at=now,
            **data.model_dump(),
        )
        with self._lock:
            self._requests[request.id] = request
            return request.model_copy(deep=True)

    def get_request(self, request_id: str) -> Optional[HelpRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            return request.model_copy(deep=True) if request else None

    def _count_helpers(self, request_id: str) -> int:
        return sum(
            1
            for (rid, _), offer in self._offers.items()
            if rid == request_id and offer.status in COUNTED_OFFER_STATUSES
        )

    def get_active_requests(self, since: datetime) -> List[HelpRequest]:
        with self._lock:
            listed = [
                r.model_copy(update={"helpers_count": self._count_helpers(r.id)}, deep=True)
                for r in self._requests.values()
                if state_machine.is_listed(r, since)
            ]
        return sorted(listed, key=lambda r: r.created_at, reverse=True)

    def _require(self, request_id: str) -> HelpRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise NotFound("Request not found")
        return request

    def offer_help(
        self, request_id: str, helper_id: str, helper_name: str, helper_email: Optional[str] = None
    ) -> OfferOutcome:
        with self._lock:
            request = self._require(request_id)
            if request.author_id == helper_id:
                raise SelfOfferForbidden("You cannot offer help on your own request")
            if (request_id, helper_id) in self._offers:
                return OfferOutcome(request=request.model_copy(deep=True), created=False)

            next_status = state_machine.status_after_offer(request.status)
            now = utcnow()
            self._offers[(request_id, helper_id)] = HelpOffer(
                id=str(uuid4()),
                request_id=request_id,
                helper_id=helper_id,
                helper_name=helper_name,
                helper_email=helper_email,
                status=OfferStatus.ACTIVE,
                offered_at=now,
            )
            updated = request.model_copy(
                update={
                    "helpers_count": self._count_helpers(request_id),
                    "status": next_status,
                    "updated_at": now,
                }
            )
            self._requests[request_id] = updated
            return OfferOutcome(request=updated.model_copy(deep=True), created=True)

    def set_offer_status(
        self, request_id: str, helper_id: str, status: OfferStatus, author_id: str
    ) -> OfferChange:
        with self._lock:
            request = self._require(request_id)
            if request.author_id != author_id:
                raise Forbidden("Only the request author can manage helpers")
            offer = self._offers.get((request_id, helper_id))
            if offer is None:
                raise NotFound("Offer not found")

            if state_machine.check_offer_change(offer.status, status, request.status):
                offer = offer.model_copy(update={"status": status})
                self._offers[(request_id, helper_id)] = offer
                changes = {"helpers_count": self._count_helpers(request_id), "updated_at": utcnow()}
                if status == OfferStatus.ACCEPTED:
                    changes["status"] = state_machine.status_after_offer(request.status)
                request = request.model_copy(update=changes)
                self._requests[request_id] = request
            return OfferChange(offer=offer.model_copy(), request=request.model_copy(deep=True))

    def update_request_status(
        self,
        request_id: str,
        status: RequestStatus,
        author_id: str,
        expected: RequestStatus,
    ) -> Optional[HelpRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.author_id != author_id or request.status != expected:
                return None
            now = utcnow()
            request = request.model_copy(update={"status": status, "updated_at": now})
            self._requests[request_id] = request
            if status == RequestStatus.COMPLETED:
                for key, offer in list(self._offers.items()):
                    if key[0] == request_id and offer.status == OfferStatus.ACCEPTED and offer.completed_at is None:
                        self._offers[key] = offer.model_copy(update={"completed_at": now})
            return request.model_copy(deep=True)

    def list_offers(self, request_id: str) -> List[HelpOffer]:
        with self._lock:
            offers = [o.model_copy() for (rid, _), o in self._offers.items() if rid == request_id]
        return sorted(offers, key=lambda o: o.offered_at)

    def get_offer(self, request_id: str, helper_id: str) -> Optional[HelpOffer]:
        with self._lock:
            offer = self._offers.get((request_id, helper_id))
            return offer.model_copy() if offer else None

    def offered_request_ids(self, helper_id: str, request_ids: Iterable[str]) -> Set[str]:
        wanted = set(request_ids)
        with self._lock:
            return {
                rid
                for (rid, hid), offer in self._offers.items()
                if hid == helper_id and rid in wanted and offer.status in COUNTED_OFFER_STATUSES
            }

    def user_stats(self, user_id: str) -> UserStats:
        with self._lock:
            mine = [r for r in self._requests.values() if r.author_id == user_id]
            offers = [o for (_, hid), o in self._offers.items() if hid == user_id]
            user = self._users.get(user_id)

        people_helped = sum(1 for o in offers if o.status in COUNTED_OFFER_STATUSES)
        return UserStats(
            requests_made=len(mine),
            people_helped=people_helped,
            accepted_helps=sum(
                1 for o in offers if o.status in (OfferStatus.ACCEPTED, OfferStatus.COMPLETED)
            ),
            completed_requests=sum(1 for r in mine if r.status == RequestStatus.COMPLETED),
            active_requests=sum(1 for r in mine if not r.status.is_terminal),
            community_points=POINTS_PER_OFFER * people_helped + POINTS_PER_REQUEST * len(mine),
            join_date=user.created_at if user else None,
        )
