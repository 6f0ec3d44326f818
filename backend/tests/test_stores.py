"""Behaviour shared by the database store and the in-memory fallback.

Every test here runs once per implementation through the ``store`` fixture.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from backend.calpin.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from backend.calpin.models.help_request import OfferStatus, RequestStatus, utcnow
from backend.tests.fakes import AUTHOR, HELPER_B, HELPER_C, hours_ago, new_request

ANNOTATIONS = {
    "category",
    "category_icon",
    "category_name",
    "detected_urgency",
    "estimated_time",
    "tags",
    "suggested_title",
    "safety_check",
    "safety_reason",
    "urgency_level",
}


def _offer(store, request_id, helper):
    return store.offer_help(request_id, helper.id, helper.name, helper.email)


def test_create_starts_open_with_no_helpers(store):
    created = store.create_request(new_request())
    assert created.status == RequestStatus.OPEN
    assert created.helpers_count == 0
    assert created.id


def test_annotations_survive_a_round_trip(store):
    data = new_request(
        tags=["Moving/Carrying", "stairs"],
        safety_reason="looks fine",
        category="health",
        category_icon="🏥",
        category_name="Health & Wellness",
    )
    created = store.create_request(data)
    fetched = store.get_request(created.id)
    assert fetched.model_dump(include=ANNOTATIONS) == data.model_dump(include=ANNOTATIONS)


@pytest.mark.parametrize("field", ["latitude", "longitude"])
@pytest.mark.parametrize("value", [float("nan"), float("inf")])
def test_non_finite_coordinates_are_rejected(store, field, value):
    with pytest.raises(ValidationError) as exc:
        store.create_request(new_request(**{field: value}))
    assert field in exc.value.fields
    assert store.get_active_requests(hours_ago(24)) == []


def test_get_unknown_request(store):
    assert store.get_request("missing") is None


def test_listing_excludes_flagged_old_and_terminal(store):
    visible = store.create_request(new_request())
    store.create_request(new_request(safety_check="flagged"))
    cancelled = store.create_request(new_request())
    assert store.update_request_status(
        cancelled.id, RequestStatus.CANCELLED, AUTHOR.id, expected=RequestStatus.OPEN
    )

    listed = store.get_active_requests(hours_ago(24))
    assert [r.id for r in listed] == [visible.id]

    # Outside the window nothing is listed
    assert store.get_active_requests(utcnow() + timedelta(seconds=1)) == []


def test_listing_is_newest_first(store):
    first = store.create_request(new_request(title="first"))
    second = store.create_request(new_request(title="second"))
    ids = [r.id for r in store.get_active_requests(hours_ago(24))]
    assert ids.index(second.id) < ids.index(first.id)


def test_first_offer_moves_request_in_progress(store):
    created = store.create_request(new_request())
    outcome = _offer(store, created.id, HELPER_B)
    assert outcome.created is True
    assert outcome.request.status == RequestStatus.IN_PROGRESS
    assert outcome.request.helpers_count == 1

    offer = store.get_offer(created.id, HELPER_B.id)
    assert offer.status == OfferStatus.ACTIVE
    assert offer.helper_name == "Bob"


def test_duplicate_offer_is_a_noop(store):
    created = store.create_request(new_request())
    assert _offer(store, created.id, HELPER_B).created is True
    again = _offer(store, created.id, HELPER_B)
    assert again.created is False
    assert again.request.helpers_count == 1
    assert store.get_request(created.id).helpers_count == 1
    assert len(store.list_offers(created.id)) == 1


def test_self_offer_is_forbidden(store):
    created = store.create_request(new_request())
    with pytest.raises(Forbidden):
        _offer(store, created.id, AUTHOR)
    assert store.list_offers(created.id) == []


def test_offer_on_unknown_request(store):
    with pytest.raises(NotFound):
        _offer(store, "missing", HELPER_B)


def test_offer_on_cancelled_request(store):
    created = store.create_request(new_request())
    store.update_request_status(created.id, RequestStatus.CANCELLED, AUTHOR.id, expected=RequestStatus.OPEN)
    with pytest.raises(InvalidTransition):
        _offer(store, created.id, HELPER_B)
    assert store.list_offers(created.id) == []


def test_concurrent_offers_from_distinct_helpers_are_all_counted(store):
    created = store.create_request(new_request())
    helpers = [f"helper-{i}" for i in range(8)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(
            pool.map(lambda h: store.offer_help(created.id, h, h.title(), f"{h}@berkeley.edu"), helpers)
        )

    assert all(o.created for o in outcomes)
    stored = store.get_request(created.id)
    assert stored.helpers_count == len(helpers)
    assert stored.status == RequestStatus.IN_PROGRESS
    [listed] = store.get_active_requests(hours_ago(24))
    assert listed.helpers_count == stored.helpers_count


def test_concurrent_duplicate_offers_count_once(store):
    created = store.create_request(new_request())

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(lambda _: _offer(store, created.id, HELPER_B), range(6)))

    assert sum(1 for o in outcomes if o.created) == 1
    assert store.get_request(created.id).helpers_count == 1
    assert len(store.list_offers(created.id)) == 1


def test_accept_and_reject(store):
    created = store.create_request(new_request())
    _offer(store, created.id, HELPER_B)
    _offer(store, created.id, HELPER_C)

    accepted = store.set_offer_status(created.id, HELPER_B.id, OfferStatus.ACCEPTED, AUTHOR.id)
    assert accepted.offer.status == OfferStatus.ACCEPTED
    assert accepted.request.status == RequestStatus.IN_PROGRESS
    assert accepted.request.helpers_count == 2

    rejected = store.set_offer_status(created.id, HELPER_C.id, OfferStatus.REJECTED, AUTHOR.id)
    assert rejected.offer.status == OfferStatus.REJECTED
    assert rejected.request.helpers_count == 1
    [listed] = store.get_active_requests(hours_ago(24))
    assert listed.helpers_count == 1

    with pytest.raises(InvalidTransition):
        store.set_offer_status(created.id, HELPER_C.id, OfferStatus.ACCEPTED, AUTHOR.id)


def test_offer_changes_are_author_only(store):
    created = store.create_request(new_request())
    _offer(store, created.id, HELPER_B)
    with pytest.raises(Forbidden):
        store.set_offer_status(created.id, HELPER_B.id, OfferStatus.ACCEPTED, HELPER_C.id)
    with pytest.raises(NotFound):
        store.set_offer_status(created.id, HELPER_C.id, OfferStatus.ACCEPTED, AUTHOR.id)


def test_status_update_is_compare_and_set(store):
    created = store.create_request(new_request())
    # Wrong author and stale expectation both write nothing
    assert store.update_request_status(
        created.id, RequestStatus.CANCELLED, HELPER_B.id, expected=RequestStatus.OPEN
    ) is None
    assert store.update_request_status(
        created.id, RequestStatus.CANCELLED, AUTHOR.id, expected=RequestStatus.IN_PROGRESS
    ) is None
    assert store.get_request(created.id).status == RequestStatus.OPEN

    updated = store.update_request_status(
        created.id, RequestStatus.CANCELLED, AUTHOR.id, expected=RequestStatus.OPEN
    )
    assert updated.status == RequestStatus.CANCELLED


def test_completion_stamps_accepted_offers(store):
    created = store.create_request(new_request())
    _offer(store, created.id, HELPER_B)
    _offer(store, created.id, HELPER_C)
    store.set_offer_status(created.id, HELPER_B.id, OfferStatus.ACCEPTED, AUTHOR.id)
    store.update_request_status(
        created.id, RequestStatus.PENDING_COMPLETION, AUTHOR.id, expected=RequestStatus.IN_PROGRESS
    )
    store.update_request_status(
        created.id, RequestStatus.COMPLETED, AUTHOR.id, expected=RequestStatus.PENDING_COMPLETION
    )

    offers = {o.helper_id: o for o in store.list_offers(created.id)}
    assert offers[HELPER_B.id].status == OfferStatus.ACCEPTED
    assert offers[HELPER_B.id].completed_at is not None
    assert offers[HELPER_C.id].completed_at is None


def test_offered_request_ids(store):
    one = store.create_request(new_request())
    two = store.create_request(new_request())
    _offer(store, one.id, HELPER_B)
    assert store.offered_request_ids(HELPER_B.id, [one.id, two.id]) == {one.id}
    assert store.offered_request_ids(HELPER_C.id, [one.id, two.id]) == set()
    assert store.offered_request_ids(HELPER_B.id, []) == set()


def test_upsert_user_keeps_join_date(store):
    first = store.upsert_user(AUTHOR.id, AUTHOR.email, AUTHOR.name)
    second = store.upsert_user(AUTHOR.id, AUTHOR.email, "Alice A.")
    assert second.name == "Alice A."
    assert second.created_at == first.created_at
    assert second.last_seen_at >= first.last_seen_at


def test_upsert_user_with_reissued_id_for_same_email(store):
    first = store.upsert_user("id-1", "a@berkeley.edu", "Ann")
    second = store.upsert_user("id-2", "a@berkeley.edu", "Ann")
    assert (first.id, second.id) == ("id-1", "id-2")
    assert second.email == "a@berkeley.edu"

    # Both identities keep working on later calls
    again = store.upsert_user("id-2", "a@berkeley.edu", "Ann B.")
    assert again.name == "Ann B."
    assert again.created_at == second.created_at
    assert store.user_stats("id-1").join_date == first.created_at


def test_user_stats(store):
    store.upsert_user(AUTHOR.id, AUTHOR.email, AUTHOR.name)
    store.upsert_user(HELPER_B.id, HELPER_B.email, HELPER_B.name)
    one = store.create_request(new_request())
    two = store.create_request(new_request())
    _offer(store, one.id, HELPER_B)
    store.set_offer_status(one.id, HELPER_B.id, OfferStatus.ACCEPTED, AUTHOR.id)
    store.update_request_status(two.id, RequestStatus.CANCELLED, AUTHOR.id, expected=RequestStatus.OPEN)

    author = store.user_stats(AUTHOR.id)
    assert author.requests_made == 2
    assert author.active_requests == 1
    assert author.completed_requests == 0
    assert author.community_points == 10
    assert author.join_date is not None

    helper = store.user_stats(HELPER_B.id)
    assert helper.people_helped == 1
    assert helper.accepted_helps == 1
    assert helper.requests_made == 0
    assert helper.community_points == 10

    assert store.user_stats("nobody").join_date is None
