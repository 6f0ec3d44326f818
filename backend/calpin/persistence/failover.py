import logging
import threading
from datetime import datetime
from typing import Any, Iterable, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError

from ..config import Settings
from ..db.base import init_db, make_engine, make_session_factory, ping
from ..errors import StoreUnavailable
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
from .gateway import HelpStore
from .memory_store import InMemoryHelpStore
from .sql_store import SqlHelpStore

logger = logging.getLogger(__name__)


class FailoverHelpStore(HelpStore):
    """Routes every call to the primary store until it proves unreachable.

    The switch happens only on StoreUnavailable, which the primary raises before
    any statement runs; a call that got as far as a transaction either commits
    there or fails, it is never replayed against the fallback. Once degraded the
    store stays degraded until restart.
    """

    def __init__(self, primary: Optional[HelpStore], fallback: HelpStore, degraded: bool = False):
        self._primary = primary
        self._fallback = fallback
        self._degraded = degraded or primary is None
        self._switch_lock = threading.Lock()

    @property
    def mode(self) -> str:
        return "fallback" if self._degraded else "primary"

    @property
    def primary(self) -> Optional[HelpStore]:
        return self._primary

    def _switch_to_fallback(self, error: Exception) -> None:
        with self._switch_lock:
            if not self._degraded:
                logger.warning("Primary store unavailable, switching to in-memory fallback: %s", error)
                self._degraded = True

    def _call(self, op: str, *args, **kwargs) -> Any:
        if not self._degraded:
            try:
                return getattr(self._primary, op)(*args, **kwargs)
            except StoreUnavailable as e:
                self._switch_to_fallback(e)
        return getattr(self._fallback, op)(*args, **kwargs)

    def close(self) -> None:
        if self._primary is not None:
            self._primary.close()

    def ping(self) -> bool:
        if self._degraded or self._primary is None:
            return False
        return self._primary.ping()

    def upsert_user(self, user_id: str, email: str, name: str) -> User:
        return self._call("upsert_user", user_id, email, name)

    def create_request(self, data: NewHelpRequest) -> HelpRequest:
        return self._call("create_request", data)

    def get_request(self, request_id: str) -> Optional[HelpRequest]:
        return self._call("get_request", request_id)

    def get_active_requests(self, since: datetime) -> List[HelpRequest]:
        return self._call("get_active_requests", since)

    def offer_help(
        self, request_id: str, helper_id: str, helper_name: str, helper_email: Optional[str] = None
    ) -> OfferOutcome:
        return self._call("offer_help", request_id, helper_id, helper_name, helper_email)

    def set_offer_status(
        self, request_id: str, helper_id: str, status: OfferStatus, author_id: str
    ) -> OfferChange:
        return self._call("set_offer_status", request_id, helper_id, status, author_id)

    def update_request_status(
        self,
        request_id: str,
        status: RequestStatus,
        author_id: str,
        expected: RequestStatus,
    ) -> Optional[HelpRequest]:
        return self._call("update_request_status", request_id, status, author_id, expected)

    def list_offers(self, request_id: str) -> List[HelpOffer]:
        return self._call("list_offers", request_id)

    def get_offer(self, request_id: str, helper_id: str) -> Optional[HelpOffer]:
        return self._call("get_offer", request_id, helper_id)

    def offered_request_ids(self, helper_id: str, request_ids: Iterable[str]) -> Set[str]:
        return self._call("offered_request_ids", helper_id, list(request_ids))

    def user_stats(self, user_id: str) -> UserStats:
        return self._call("user_stats", user_id)


def build_store(settings: Settings) -> FailoverHelpStore:
    """Pick the store mode once, at startup."""
    fallback = InMemoryHelpStore()
    if settings.FORCE_FALLBACK_STORE:
        logger.warning("FORCE_FALLBACK_STORE set; using in-memory store")
        return FailoverHelpStore(None, fallback, degraded=True)

    engine = make_engine(settings.DATABASE_URL)
    primary = SqlHelpStore(engine, make_session_factory(engine))
    if not ping(engine):
        logger.warning("Database unreachable at startup; using in-memory store")
        return FailoverHelpStore(primary, fallback, degraded=True)
    try:
        init_db(engine)
    except SQLAlchemyError as e:
        logger.warning("Database initialization failed (%s); using in-memory store", e)
        return FailoverHelpStore(primary, fallback, degraded=True)
    logger.info("Using database store at %s", engine.url.render_as_string(hide_password=True))
    return FailoverHelpStore(primary, fallback)
