"""Pytest configuration and fixtures for Serenya tests.

Test isolation strategy:
- Every test runs against a fresh in-memory SQLite schema (ORM metadata)
- Settings and process-wide providers are reset around every test
- Collaborators (object store, cipher, LLM) are in-memory fakes
- API tests use the real SecretTokenVerifier against the local secret store,
  with tokens minted by tests.helpers
"""

import os
import sys
from collections.abc import Generator
from pathlib import Path

# Settings are read at import time by serenya.celery
os.environ["SERENYA_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("TEMP_BUCKET_NAME", None)
os.environ.pop("KMS_KEY_ID", None)
os.environ.pop("API_SECRETS_ARN", None)

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from serenya.app import add_request_id_middleware, create_app
from serenya.cache import TTLCache
from serenya.config import clear_settings_cache
from serenya.db.models import Base
from serenya.db.session import create_session_factory, set_session_factory
from serenya.services import providers
from serenya.services.crypto import EnvelopeCipher
from serenya.services.keys import FakeKmsClient, KeyProvider
from serenya.services.llm import FakeLLMClient
from serenya.storage import FakeObjectStore

TEST_MASTER_KEY_ID = "alias/serenya-test"


@pytest.fixture(autouse=True)
def reset_process_state() -> Generator[None, None, None]:
    """Start every test with fresh settings and collaborators."""
    clear_settings_cache()
    providers.reset_providers()
    yield
    clear_settings_cache()
    providers.reset_providers()
    set_session_factory(None)


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine with the ORM schema.

    StaticPool keeps one connection, so the TestClient's worker thread sees
    the same database as the test body.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(engine: Engine) -> Generator[Session, None, None]:
    """Session bound to the test engine.

    The default session factory is pointed at the same engine, so request
    handlers and tasks read what the test wrote.
    """
    factory = create_session_factory(engine)
    set_session_factory(factory)
    session = factory()
    yield session
    session.close()


@pytest.fixture
def kms() -> FakeKmsClient:
    return FakeKmsClient()


@pytest.fixture
def key_provider(kms: FakeKmsClient) -> KeyProvider:
    return KeyProvider(kms, TTLCache(ttl_seconds=3600, max_entries=100))


@pytest.fixture
def cipher(key_provider: KeyProvider) -> EnvelopeCipher:
    """Envelope cipher over an in-memory KMS."""
    return EnvelopeCipher(key_provider, TEST_MASTER_KEY_ID)


@pytest.fixture
def store() -> FakeObjectStore:
    """Empty in-memory object store."""
    return FakeObjectStore()


@pytest.fixture
def fake_llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def app_store() -> FakeObjectStore:
    """The object store the API process uses (shared with request handlers)."""
    return providers.get_object_store()


@pytest.fixture
def app_cipher() -> EnvelopeCipher:
    """The cipher the API process uses, for processing uploads in-test."""
    return providers.get_cipher()


@pytest.fixture
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """FastAPI test client with auth and request-id middleware.

    Use auth_headers() from tests.helpers to authenticate requests.
    """
    app = create_app()
    add_request_id_middleware(app, log_requests=False)
    with TestClient(app) as client:
        yield client
