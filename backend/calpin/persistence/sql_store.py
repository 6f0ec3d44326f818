import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Set

from pydantic import ValidationError as SchemaError
from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..db.base import ping
from ..errors import CalPinError, Forbidden, NotFound, SelfOfferForbidden, StoreError, StoreUnavailable
from ..lifecycle import state_machine
from ..models import sql_models as sql
from ..models.help_request import (
    COUNTED_OFFER_STATUSES,
    TERMINAL_STATUSES,
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

logger = logging.getLogger(__name__)

# Spellings written by older clients and still present in some rows
LEGACY_STATUS_SPELLINGS = {
    RequestStatus.OPEN: ("open",),
    RequestStatus.IN_PROGRESS: ("InProgress", "in_progress"),
    RequestStatus.PENDING_COMPLETION: ("PendingCompletion", "pending_completion"),
    RequestStatus.COMPLETED: ("completed",),
    RequestStatus.CANCELLED: ("cancelled",),
}


def stored_values(*statuses: RequestStatus) -> List[str]:
    values: List[str] = []
    for status in statuses:
        values.append(status.value)
        values.extend(LEGACY_STATUS_SPELLINGS.get(status, ()))
    return values


def _counted() -> List[str]:
    return [s.value for s in COUNTED_OFFER_STATUSES]


def _is_lock_timeout(error: OperationalError) -> bool:
    # A busy database is reachable; only connection failures trigger failover
    return "locked" in str(error.orig).lower()


class SqlHelpStore(HelpStore):
    """Primary store on a relational database.

    Row-level locks (SELECT ... FOR UPDATE) serialize concurrent writers on the
    same request; on SQLite the engine opens every transaction with
    BEGIN IMMEDIATE, which gives the same guarantee at database granularity.
    """

    mode = "primary"

    def __init__(self, engine: Engine, session_factory):
        self.engine = engine
        self._session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session: Session = self._session_factory()
        try:
            try:
                session.connection()
            except OperationalError as e:
                if _is_lock_timeout(e):
                    raise StoreError("Storage busy, try again") from e
                raise StoreUnavailable("Primary store unreachable") from e
            yield session
            session.commit()
        except CalPinError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Store operation failed: %s", e)
            raise StoreError("Storage failure") from e
        finally:
            session.close()

    def ping(self) -> bool:
        return ping(self.engine)

    def close(self) -> None:
        try:
            self._session_factory.remove()
        except Exception as e:
            logger.warning("SessionLocal.remove() failed: %s", e)
        try:
            self.engine.dispose()
        except Exception as e:
            logger.warning("engine.dispose() failed: %s", e)

    # -- users ---------------------------------------------------------------

    def upsert_user(self, user_id: str, email: str, name: str) -> User:
        now = utcnow()
        with self._transaction() as session:
            row = session.get(sql.User, user_id)
            if row is None:
                try:
                    with session.begin_nested():
                        row = sql.User(id=user_id, email=email, name=name, created_at=now, last_seen_at=now)
                        session.add(row)
                except IntegrityError:
                    # Lost a race with a concurrent first login
                    row = session.get(sql.User, user_id)
                    if row is None:
                        raise
            row.name = name
            row.email = email
            row.last_seen_at = now
            session.flush()
            return User.model_validate(row)

    # -- requests ------------------------------------------------------------

    def create_request(self, data: NewHelpRequest) -> HelpRequest:
        check_coordinates(data.latitude, data.longitude)
        now = utcnow()
        with self._transaction() as session:
            row = sql.HelpRequest(
                id=sql.generate_uuid(),
                status=RequestStatus.OPEN.value,
                helpers_count=0,
                created_at=now,
                updated_at=now,
                **data.model_dump(mode="json"),
            )
            session.add(row)
            session.flush()
            return HelpRequest.model_validate(row)

    def get_request(self, request_id: str) -> Optional[HelpRequest]:
        with self._transaction() as session:
            row = session.get(sql.HelpRequest, request_id)
            return HelpRequest.model_validate(row) if row is not None else None

    def get_active_requests(self, since: datetime) -> List[HelpRequest]:
        counts = (
            select(sql.HelpOffer.request_id, func.count(sql.HelpOffer.id).label("n"))
            .where(sql.HelpOffer.status.in_(_counted()))
            .group_by(sql.HelpOffer.request_id)
            .subquery()
        )
        stmt = (
            select(sql.HelpRequest, func.coalesce(counts.c.n, 0))
            .outerjoin(counts, counts.c.request_id == sql.HelpRequest.id)
            .where(
                sql.HelpRequest.created_at > since,
                sql.HelpRequest.status.notin_(stored_values(*TERMINAL_STATUSES)),
                or_(
                    sql.HelpRequest.safety_check.is_(None),
                    sql.HelpRequest.safety_check != "flagged",
                ),
            )
            .order_by(sql.HelpRequest.created_at.desc())
        )
        results: List[HelpRequest] = []
        with self._transaction() as session:
            for row, helpers in session.execute(stmt).all():
                try:
                    item = HelpRequest.model_validate(row)
                except SchemaError as e:
                    logger.warning("Skipping unreadable request row %s: %s", row.id, e)
                    continue
                item = item.model_copy(update={"helpers_count": int(helpers)})
                if state_machine.is_listed(item, since):
                    results.append(item)
        return results

    def update_request_status(
        self,
        request_id: str,
        status: RequestStatus,
        author_id: str,
        expected: RequestStatus,
    ) -> Optional[HelpRequest]:
        now = utcnow()
        with self._transaction() as session:
            result = session.execute(
                update(sql.HelpRequest)
                .where(
                    sql.HelpRequest.id == request_id,
                    sql.HelpRequest.author_id == author_id,
                    sql.HelpRequest.status.in_(stored_values(expected)),
                )
                .values(status=status.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            if status == RequestStatus.COMPLETED:
                session.execute(
                    update(sql.HelpOffer)
                    .where(
                        sql.HelpOffer.request_id == request_id,
                        sql.HelpOffer.status == OfferStatus.ACCEPTED.value,
                        sql.HelpOffer.completed_at.is_(None),
                    )
                    .values(completed_at=now)
                    .execution_options(synchronize_session=False)
                )
            row = session.get(sql.HelpRequest, request_id)
            return HelpRequest.model_validate(row)

    # -- offers --------------------------------------------------------------

    def _lock_request(self, session: Session, request_id: str) -> sql.HelpRequest:
        row = session.execute(
            select(sql.HelpRequest).where(sql.HelpRequest.id == request_id).with_for_update()
        ).scalar_one_or_none()
        if row is None:
            raise NotFound("Request not found")
        return row

    def _find_offer(self, session: Session, request_id: str, helper_id: str) -> Optional[sql.HelpOffer]:
        return session.execute(
            select(sql.HelpOffer).where(
                sql.HelpOffer.request_id == request_id,
                sql.HelpOffer.helper_id == helper_id,
            )
        ).scalar_one_or_none()

    def _count_helpers(self, session: Session, request_id: str) -> int:
        return int(
            session.execute(
                select(func.count(sql.HelpOffer.id)).where(
                    sql.HelpOffer.request_id == request_id,
                    sql.HelpOffer.status.in_(_counted()),
                )
            ).scalar_one()
        )

    def _insert_offer_ignore(self, session: Session, values: dict) -> bool:
        """INSERT ... ON CONFLICT DO NOTHING; True when a row was inserted."""
        dialect = session.get_bind().dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(sql.HelpOffer).values(**values).on_conflict_do_nothing(
                index_elements=["request_id", "helper_id"]
            )
            return session.execute(stmt).rowcount == 1
        try:
            with session.begin_nested():
                session.add(sql.HelpOffer(**values))
            return True
        except IntegrityError:
            return False

    def offer_help(
        self, request_id: str, helper_id: str, helper_name: str, helper_email: Optional[str] = None
    ) -> OfferOutcome:
        with self._transaction() as session:
            row = self._lock_request(session, request_id)
            if row.author_id == helper_id:
                raise SelfOfferForbidden("You cannot offer help on your own request")
            if self._find_offer(session, request_id, helper_id) is not None:
                return OfferOutcome(request=HelpRequest.model_validate(row), created=False)

            current = RequestStatus.parse(row.status)
            next_status = state_machine.status_after_offer(current)
            inserted = self._insert_offer_ignore(
                session,
                {
                    "id": sql.generate_uuid(),
                    "request_id": request_id,
                    "helper_id": helper_id,
                    "helper_name": helper_name,
                    "helper_email": helper_email,
                    "status": OfferStatus.ACTIVE.value,
                    "offered_at": utcnow(),
                },
            )
            if not inserted:
                return OfferOutcome(request=HelpRequest.model_validate(row), created=False)

            row.helpers_count = self._count_helpers(session, request_id)
            row.status = next_status.value
            row.updated_at = utcnow()
            session.flush()
            return OfferOutcome(request=HelpRequest.model_validate(row), created=True)

    def set_offer_status(
        self, request_id: str, helper_id: str, status: OfferStatus, author_id: str
    ) -> OfferChange:
        with self._transaction() as session:
            row = self._lock_request(session, request_id)
            if row.author_id != author_id:
                raise Forbidden("Only the request author can manage helpers")
            offer = self._find_offer(session, request_id, helper_id)
            if offer is None:
                raise NotFound("Offer not found")

            current = RequestStatus.parse(row.status)
            if state_machine.check_offer_change(OfferStatus.parse(offer.status), status, current):
                offer.status = status.value
                if status == OfferStatus.ACCEPTED:
                    row.status = state_machine.status_after_offer(current).value
                session.flush()
                row.helpers_count = self._count_helpers(session, request_id)
                row.updated_at = utcnow()
                session.flush()
            return OfferChange(
                offer=HelpOffer.model_validate(offer),
                request=HelpRequest.model_validate(row),
            )

    def list_offers(self, request_id: str) -> List[HelpOffer]:
        with self._transaction() as session:
            rows = session.execute(
                select(sql.HelpOffer)
                .where(sql.HelpOffer.request_id == request_id)
                .order_by(sql.HelpOffer.offered_at)
            ).scalars().all()
            return [HelpOffer.model_validate(r) for r in rows]

    def get_offer(self, request_id: str, helper_id: str) -> Optional[HelpOffer]:
        with self._transaction() as session:
            row = self._find_offer(session, request_id, helper_id)
            return HelpOffer.model_validate(row) if row is not None else None

    def offered_request_ids(self, helper_id: str, request_ids: Iterable[str]) -> Set[str]:
        ids = list(request_ids)
        if not ids:
            return set()
        with self._transaction() as session:
            rows = session.execute(
                select(sql.HelpOffer.request_id).where(
                    sql.HelpOffer.helper_id == helper_id,
                    sql.HelpOffer.request_id.in_(ids),
                    sql.HelpOffer.status.in_(_counted()),
                )
            ).scalars().all()
            return set(rows)

    def user_stats(self, user_id: str) -> UserStats:
        def count(stmt) -> int:
            return int(session.execute(stmt).scalar_one())

        with self._transaction() as session:
            requests = select(func.count(sql.HelpRequest.id)).where(sql.HelpRequest.author_id == user_id)
            offers = select(func.count(sql.HelpOffer.id)).where(sql.HelpOffer.helper_id == user_id)

            requests_made = count(requests)
            people_helped = count(offers.where(sql.HelpOffer.status.in_(_counted())))
            accepted = count(
                offers.where(
                    sql.HelpOffer.status.in_(
                        [OfferStatus.ACCEPTED.value, OfferStatus.COMPLETED.value]
                    )
                )
            )
            completed = count(
                requests.where(sql.HelpRequest.status.in_(stored_values(RequestStatus.COMPLETED)))
            )
            active = count(
                requests.where(sql.HelpRequest.status.notin_(stored_values(*TERMINAL_STATUSES)))
            )
            user = session.get(sql.User, user_id)

            return UserStats(
                requests_made=requests_made,
                people_helped=people_helped,
                accepted_helps=accepted,
                completed_requests=completed,
                active_requests=active,
                community_points=POINTS_PER_OFFER * people_helped + POINTS_PER_REQUEST * requests_made,
                join_date=user.created_at if user is not None else None,
            )
