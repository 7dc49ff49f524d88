"""Pytest configuration and fixtures for tutor tests.

Test isolation strategy:
- The schema is created once per session from the ORM metadata
- Every test that touches the database gets empty tables afterwards;
  the answer worker and concurrency tests open their own sessions, so
  savepoint rollback would not see their writes
- TEST_DATABASE_URL runs the suite against PostgreSQL instead of SQLite
- API tests use create_app() with a scripted inference router and the
  in-memory attachment store; inline answer jobs run on a synchronous
  executor, so they have finished when the admitting request returns
"""

import os
import sys
import tempfile
from collections.abc import Generator
from pathlib import Path

# Environment must be in place before tutor modules read settings
_TEST_DB_DIR = tempfile.mkdtemp(prefix="tutor-tests-")
os.environ["DATABASE_URL"] = (
    os.environ.get("TEST_DATABASE_URL") or f"sqlite:///{_TEST_DB_DIR}/tutor_test.db"
)
os.environ["TUTOR_ENV"] = "test"
os.environ["JOB_DISPATCH_MODE"] = "inline"
os.environ["INFERENCE_BACKOFF_BASE_S"] = "0"
os.environ.setdefault("OPENAI_API_KEY", "sk-test-openai")
os.environ.setdefault("ANTHROPIC_API_KEY", "sk-test-anthropic")
os.environ.setdefault("GEMINI_API_KEY", "test-gemini")

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from tutor.app import add_request_id_middleware, create_app
from tutor.config import Settings, clear_settings_cache, get_settings
from tutor.db.engine import create_db_engine
from tutor.db.models import Base
from tutor.db.session import create_session_factory
from tutor.services.ledger import UsageLedger
from tutor.storage import FakeAttachmentStore
from tests.support.executors import SynchronousExecutor
from tests.support.fake_llm import ScriptedRouter


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    """Database engine shared by the whole session, schema freshly created."""
    engine = create_db_engine(os.environ["DATABASE_URL"])
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> Generator[sessionmaker[Session], None, None]:
    """Session factory bound to the test engine; tables are emptied after the test."""
    yield create_session_factory(engine)
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """A plain session. Commits are real; cleanup happens in session_factory."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def ledger(settings: Settings) -> UsageLedger:
    return UsageLedger.from_settings(settings)


@pytest.fixture
def fake_router() -> ScriptedRouter:
    """Inference router that answers from a script instead of the network."""
    return ScriptedRouter()


@pytest.fixture
def attachment_store() -> FakeAttachmentStore:
    return FakeAttachmentStore()


@pytest.fixture
def app(session_factory, fake_router, attachment_store):
    """Full application with request-id middleware, inline dispatch and fakes."""
    app = create_app(
        llm_router=fake_router,
        attachment_store=attachment_store,
        job_executor=SynchronousExecutor(),
    )
    add_request_id_middleware(app, log_requests=False)
    return app


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the settings cache before each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
