import os

os.environ["ENV"] = "test"

import threading  # noqa: E402
from contextlib import contextmanager  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

import app.models  # noqa: E402,F401
from app.config import Settings  # noqa: E402
from app.core.app_state import AppState  # noqa: E402
from app.core.change_feed import ChangeFeed  # noqa: E402
from app.db import Base, build_engine, get_db  # noqa: E402
from app.main import create_app  # noqa: E402
from app.services.message_store import SqlMessageStore  # noqa: E402

pytest_plugins = [
    "tests.fixtures.conversation_fixtures",
    "tests.fixtures.stream_fixtures",
]


@pytest.fixture(scope="function")
def engine():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_scope(db):
    """Session factory for the store that hands out the test session without closing it.

    Store calls run in worker threads, so use of the shared session is serialized.
    """
    lock = threading.Lock()

    @contextmanager
    def scope():
        with lock:
            yield db

    return scope


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(feed, session_scope):
    return SqlMessageStore(feed, session_scope=session_scope)


@pytest.fixture
def test_settings():
    return Settings(
        stream_flush_interval_ms=100,
        stream_error_message="Something went wrong",
        resubscribe_backoff_seconds=0.01,
        resubscribe_backoff_max_seconds=0.01,
        echo_dedup_window_seconds=10.0,
        llm_history_limit=50,
    )


@pytest.fixture
def client(db, feed, store, test_settings, fake_llm):
    """TestClient wired to the in-memory database and a scripted LLM."""
    state = AppState(store=store, llm=fake_llm("Hello", " world"), settings=test_settings, feed=feed)
    application = create_app(testing=True, state=state)

    def override_get_db():
        yield db

    application.dependency_overrides[get_db] = override_get_db
    with TestClient(application) as test_client:
        yield test_client
