import sys
from pathlib import Path

# Ensure repository root is on sys.path so 'import backend' works
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Force pytest-anyio to use asyncio backend (avoid requiring 'trio')
import pytest

from backend.calpin.config import Settings
from backend.calpin.db.base import init_db, make_engine, make_session_factory
from backend.calpin.moderation.pipeline import ModerationPipeline
from backend.calpin.persistence.memory_store import InMemoryHelpStore
from backend.calpin.persistence.sql_store import SqlHelpStore
from backend.calpin.services.coordinator import RequestCoordinator
from backend.tests.fakes import FakeClassifier


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ENVIRONMENT="test",
        SECRET_KEY="test-secret",
        DATABASE_URL=f"sqlite:///{tmp_path / 'calpin.db'}",
        OPENAI_API_KEY="",
        CLASSIFIER_ENABLED=False,
        ALLOWED_EMAIL_DOMAINS=["berkeley.edu"],
    )


@pytest.fixture
def sql_store(settings):
    engine = make_engine(settings.DATABASE_URL)
    init_db(engine)
    store = SqlHelpStore(engine, make_session_factory(engine))
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def memory_store():
    return InMemoryHelpStore()


@pytest.fixture(params=["sql", "memory"])
def store(request):
    """Runs a test once against each store implementation."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def classifier():
    fake = FakeClassifier()
    yield fake
    fake.release.set()


@pytest.fixture
def pipeline(classifier):
    p = ModerationPipeline(classifier, timeout_s=0.5)
    try:
        yield p
    finally:
        p.close()


@pytest.fixture
def coordinator(store, pipeline, settings):
    return RequestCoordinator(store, pipeline, settings)
