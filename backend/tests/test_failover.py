import pytest

from backend.calpin.errors import StoreUnavailable
from backend.calpin.persistence.failover import FailoverHelpStore, build_store
from backend.calpin.persistence.memory_store import InMemoryHelpStore
from backend.tests.fakes import HELPER_B, new_request


class UnreachableStore(InMemoryHelpStore):
    """Behaves like a primary whose connection fails before any work."""

    mode = "primary"

    def __init__(self):
        super().__init__()
        self.attempts = 0

    def ping(self):
        return False

    def create_request(self, data):
        self.attempts += 1
        raise StoreUnavailable("connection refused")


def test_switches_to_fallback_on_unreachable_primary():
    primary = UnreachableStore()
    store = FailoverHelpStore(primary, InMemoryHelpStore())
    assert store.mode == "primary"

    created = store.create_request(new_request())
    assert store.mode == "fallback"
    assert store.get_request(created.id) is not None

    # Once degraded, the primary is not retried
    store.create_request(new_request())
    assert primary.attempts == 1
    assert store.ping() is False


def test_fallback_ignores_duplicate_offers():
    store = FailoverHelpStore(None, InMemoryHelpStore())
    assert store.mode == "fallback"
    created = store.create_request(new_request())
    store.offer_help(created.id, HELPER_B.id, HELPER_B.name, HELPER_B.email)
    again = store.offer_help(created.id, HELPER_B.id, HELPER_B.name, HELPER_B.email)
    assert again.created is False
    assert store.get_request(created.id).helpers_count == 1


def test_build_store_forced_fallback(settings):
    store = build_store(settings.model_copy(update={"FORCE_FALLBACK_STORE": True}))
    assert store.mode == "fallback"
    assert store.primary is None


def test_build_store_uses_database(settings):
    store = build_store(settings)
    try:
        assert store.mode == "primary"
        assert store.ping() is True
        created = store.create_request(new_request())
        assert store.primary.get_request(created.id) is not None
    finally:
        store.close()


def test_build_store_degrades_when_database_unreachable(settings, tmp_path):
    # A database file inside a directory that does not exist cannot be opened
    url = f"sqlite:///{tmp_path / 'missing' / 'calpin.db'}"
    store = build_store(settings.model_copy(update={"DATABASE_URL": url}))
    try:
        assert store.mode == "fallback"
        assert store.create_request(new_request()).id
    finally:
        store.close()


@pytest.mark.parametrize("degraded", [True, False])
def test_reports_mode(degraded):
    store = FailoverHelpStore(InMemoryHelpStore(), InMemoryHelpStore(), degraded=degraded)
    assert store.mode == ("fallback" if degraded else "primary")
