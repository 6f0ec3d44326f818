import logging
import math
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..config import Settings
from ..errors import (
    AlreadyOffered,
    Forbidden,
    ModerationRejected,
    NotFound,
    SelfOfferForbidden,
    StoreError,
    ValidationError,
)
from ..lifecycle import state_machine
from ..models.help_request import (
    COUNTED_OFFER_STATUSES,
    HelperEntry,
    HelperStatus,
    HelpRequest,
    HelpRequestView,
    NewHelpRequest,
    OfferChange,
    OfferStatus,
    RequestStatus,
    UrgencyLevel,
    utcnow,
)
from ..models.user import Principal, User, UserStats
from ..moderation.categories import CATEGORIES, get_category
from ..moderation.pipeline import ModerationPipeline
from ..moderation.prefilter import DEFAULT_SAFETY_MESSAGE
from ..persistence.gateway import HelpStore
from .geo import distance_and_duration

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 500
MAX_CONTACT_LENGTH = 255

# Compare-and-set attempts before a status change gives up
MAX_STATUS_ATTEMPTS = 3


def _text(payload: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def parse_coordinate(value: Any, low: float, high: float) -> float:
    """Coerce a string or number to a finite float within [low, high].

    Raises ValueError with a short description otherwise.
    """
    if value is None or isinstance(value, bool):
        raise ValueError("must be a number")
    if isinstance(value, str):
        value = value.strip()
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError("must be a number")
    if not math.isfinite(number):
        raise ValueError("must be a finite number")
    if not low <= number <= high:
        raise ValueError(f"must be between {low:g} and {high:g}")
    return number


def parse_identifier(value: Any, field: str) -> str:
    """Ids arrive as strings or numbers from older clients."""
    if isinstance(value, bool) or value is None:
        raise ValidationError({field: "is required"})
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ValidationError({field: "must be a string or integer id"})


def parse_status(value: Any) -> RequestStatus:
    try:
        return RequestStatus.parse(value)
    except ValueError:
        raise ValidationError({"status": f"unknown status {value!r}"})


def parse_origin(lat: Optional[str], lon: Optional[str]) -> Optional[Tuple[float, float]]:
    """Optional listing origin; both coordinates or neither."""
    if lat in (None, "") and lon in (None, ""):
        return None
    problems = {}
    parsed = []
    for name, value, low, high in (("lat", lat, -90.0, 90.0), ("lon", lon, -180.0, 180.0)):
        try:
            parsed.append(parse_coordinate(value, low, high))
        except ValueError as e:
            problems[name] = str(e)
    if problems:
        raise ValidationError(problems)
    return parsed[0], parsed[1]


def parse_create_payload(payload: Any, principal: Principal) -> NewHelpRequest:
    """Turn a loosely-typed create body into a typed, not yet moderated request.

    Accepts ``caption`` or ``title`` for the title and ``contact`` or
    ``address`` for the contact line. Every problem is reported at once.
    """
    if not isinstance(payload, dict):
        raise ValidationError({"body": "must be a JSON object"})

    problems: Dict[str, str] = {}

    title = _text(payload, "caption", "title")
    if title is None:
        problems["title"] = "is required"
    elif len(title) > MAX_TITLE_LENGTH:
        problems["title"] = f"must be at most {MAX_TITLE_LENGTH} characters"

    description = _text(payload, "description")
    if description is None:
        problems["description"] = "is required"
    elif len(description) > MAX_DESCRIPTION_LENGTH:
        problems["description"] = f"must be at most {MAX_DESCRIPTION_LENGTH} characters"

    address = _text(payload, "address")
    contact = _text(payload, "contact") or address
    if contact is None:
        problems["contact"] = "contact or address is required"
    elif len(contact) > MAX_CONTACT_LENGTH:
        problems["contact"] = f"must be at most {MAX_CONTACT_LENGTH} characters"

    coordinates = {}
    for name, low, high in (("latitude", -90.0, 90.0), ("longitude", -180.0, 180.0)):
        try:
            coordinates[name] = parse_coordinate(payload.get(name), low, high)
        except ValueError as e:
            problems[name] = str(e)

    urgency = UrgencyLevel.MEDIUM
    raw_urgency = payload.get("urgencyLevel")
    if raw_urgency not in (None, ""):
        try:
            urgency = UrgencyLevel.parse(raw_urgency)
        except ValueError:
            problems["urgencyLevel"] = "must be one of " + ", ".join(u.value for u in UrgencyLevel)

    if problems:
        raise ValidationError(problems)

    return NewHelpRequest(
        title=title,
        description=description,
        latitude=coordinates["latitude"],
        longitude=coordinates["longitude"],
        contact=contact,
        address=address,
        urgency_level=urgency,
        author_id=principal.id,
        author_name=principal.name,
    )


class RequestCoordinator:
    """Composes moderation, the lifecycle rules and the store into the
    operations the API exposes. Safe to call from many threads at once; all
    cross-call consistency lives in the store."""

    def __init__(self, store: HelpStore, pipeline: ModerationPipeline, settings: Settings):
        self.store = store
        self.pipeline = pipeline
        self.settings = settings

    def register_principal(self, principal: Principal) -> User:
        return self.store.upsert_user(principal.id, principal.email, principal.name)

    def _cutoff(self):
        return utcnow() - timedelta(hours=self.settings.VISIBILITY_WINDOW_HOURS)

    def _view(
        self,
        request: HelpRequest,
        origin: Optional[Tuple[float, float]],
        helping: bool,
    ) -> HelpRequestView:
        distance, duration = distance_and_duration(
            origin,
            request.latitude,
            request.longitude,
            minutes_per_mile=self.settings.MINUTES_PER_MILE,
            placeholder=(self.settings.PLACEHOLDER_DISTANCE, self.settings.PLACEHOLDER_DURATION),
        )
        return HelpRequestView(
            **request.model_dump(),
            distance=distance,
            duration=duration,
            is_current_user_helping=helping,
        )

    def _require(self, request_id: str) -> HelpRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise NotFound("Request not found")
        return request

    def _require_author(self, request_id: str, principal: Principal, action: str) -> HelpRequest:
        request = self._require(request_id)
        if request.author_id != principal.id:
            raise Forbidden(f"Only the request author can {action}")
        return request

    def create_request(self, principal: Principal, payload: Any) -> HelpRequest:
        """Validate, moderate and persist a new request.

        Args:
            principal: The verified author
            payload: The raw JSON body

        Returns:
            HelpRequest: The stored request, status Open with no helpers

        Raises:
            ValidationError: If any field is missing or malformed
            ModerationRejected: If the content is flagged; nothing is stored
        """
        draft = parse_create_payload(payload, principal)
        verdict = self.pipeline.evaluate(draft.title, draft.description, draft.urgency_level)
        if not verdict.safe:
            raise ModerationRejected(verdict.reason or DEFAULT_SAFETY_MESSAGE, verdict.category)

        data = draft.model_copy(
            update={
                "category": verdict.category,
                "category_icon": verdict.category_icon,
                "category_name": verdict.category_name,
                "detected_urgency": verdict.urgency,
                "estimated_time": verdict.estimated_minutes,
                "tags": list(verdict.tags),
                "suggested_title": verdict.suggested_title,
                "safety_check": verdict.safety_check,
                "safety_reason": verdict.reason,
            }
        )
        request = self.store.create_request(data)
        logger.info("Request %s created by %s (category=%s)", request.id, principal.id, request.category)
        return request

    def list_active(
        self, principal: Principal, origin: Optional[Tuple[float, float]] = None
    ) -> List[HelpRequestView]:
        requests = self.store.get_active_requests(self._cutoff())
        helping = self.store.offered_request_ids(principal.id, [r.id for r in requests])
        return [self._view(r, origin, r.id in helping) for r in requests]

    def count_active(self) -> int:
        return len(self.store.get_active_requests(self._cutoff()))

    def get_request(
        self, principal: Principal, request_id: str, origin: Optional[Tuple[float, float]] = None
    ) -> HelpRequestView:
        request = self._require(request_id)
        offer = self.store.get_offer(request_id, principal.id)
        helping = offer is not None and offer.status in COUNTED_OFFER_STATUSES
        return self._view(request, origin, helping)

    def offer_help(self, principal: Principal, request_id: str) -> HelpRequest:
        request = self._require(request_id)
        if request.author_id == principal.id:
            raise SelfOfferForbidden("You cannot offer help on your own request")

        outcome = self.store.offer_help(request_id, principal.id, principal.name, principal.email)
        if not outcome.created:
            raise AlreadyOffered("You have already offered help on this request")
        logger.info(
            "Helper %s offered on request %s (helpers=%d, status=%s)",
            principal.id,
            request_id,
            outcome.request.helpers_count,
            outcome.request.status.value,
        )
        return outcome.request

    def accept_helper(self, principal: Principal, request_id: str, helper_id: Any) -> OfferChange:
        helper_id = parse_identifier(helper_id, "helperId")
        self._require_author(request_id, principal, "accept helpers")
        change = self.store.set_offer_status(request_id, helper_id, OfferStatus.ACCEPTED, principal.id)
        logger.info("Helper %s accepted on request %s", helper_id, request_id)
        return change

    def reject_helper(self, principal: Principal, request_id: str, helper_id: Any) -> OfferChange:
        helper_id = parse_identifier(helper_id, "helperId")
        self._require_author(request_id, principal, "reject helpers")
        change = self.store.set_offer_status(request_id, helper_id, OfferStatus.REJECTED, principal.id)
        logger.info(
            "Helper %s rejected on request %s (helpers=%d)",
            helper_id,
            request_id,
            change.request.helpers_count,
        )
        return change

    def set_status(self, principal: Principal, request_id: str, status: Any) -> HelpRequest:
        """Author-driven status change, validated before any write.

        The write is a compare-and-set against the status that was validated;
        if another caller moved the request in between, the change is
        re-validated against the new state.
        """
        requested = parse_status(status)
        for _ in range(MAX_STATUS_ATTEMPTS):
            request = self._require_author(request_id, principal, "change its status")
            if not state_machine.check_status_change(request.status, requested):
                return request
            updated = self.store.update_request_status(
                request_id, requested, principal.id, expected=request.status
            )
            if updated is not None:
                logger.info(
                    "Request %s moved from %s to %s",
                    request_id,
                    request.status.value,
                    requested.value,
                )
                return updated
            logger.info("Request %s changed concurrently, re-checking status change", request_id)
        raise StoreError("Could not update request status")

    def list_helpers(self, principal: Principal, request_id: str) -> List[HelperEntry]:
        self._require_author(request_id, principal, "view its helpers")
        return [
            HelperEntry(
                id=o.helper_id,
                name=o.helper_name,
                email=o.helper_email,
                status=o.status,
                offered_at=o.offered_at,
                completed_at=o.completed_at,
            )
            for o in self.store.list_offers(request_id)
        ]

    def helper_status(self, principal: Principal, request_id: str) -> HelperStatus:
        self._require(request_id)
        offer = self.store.get_offer(request_id, principal.id)
        if offer is None or offer.status not in COUNTED_OFFER_STATUSES:
            return HelperStatus(is_helping=False)
        return HelperStatus(is_helping=True, help_offered_at=offer.offered_at)

    def user_stats(self, principal: Principal) -> UserStats:
        return self.store.user_stats(principal.id)

    def categories_with_counts(self) -> List[Dict[str, Any]]:
        counts = Counter(
            get_category(r.category).id for r in self.store.get_active_requests(self._cutoff())
        )
        return [
            {"id": c.id, "name": c.name, "icon": c.icon, "count": counts.get(c.id, 0)}
            for c in CATEGORIES
        ]

    def improve(self, payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise ValidationError({"body": "must be a JSON object"})
        title = _text(payload, "title", "caption")
        description = _text(payload, "description")
        problems = {}
        if title is None:
            problems["title"] = "is required"
        if description is None:
            problems["description"] = "is required"
        if problems:
            raise ValidationError(problems)
        return self.pipeline.improve(title, description)
