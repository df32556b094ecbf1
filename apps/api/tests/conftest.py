from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy.orm import Session

TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4
TEST_SESSION_SECRET = "test-session-secret"


def _clear_caches() -> None:
    from relnotes.core.config import get_settings
    from relnotes.db.session import get_engine, get_sessionmaker

    get_sessionmaker.cache_clear()
    get_engine.cache_clear()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("APP_ENV", "test")
    # Single shared in-memory database per test (StaticPool).
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("API_BASE_URL", "http://api.test")
    monkeypatch.setenv("FRONTEND_URL", "http://app.test")
    monkeypatch.setenv("SESSION_SECRET", TEST_SESSION_SECRET)
    monkeypatch.setenv("INTEGRATIONS_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("ENABLE_OTEL_TRACING", "false")
    for provider in ("github", "jira", "linear"):
        prefix = provider.upper()
        monkeypatch.setenv(f"{prefix}_CLIENT_ID", f"test-{provider}-client-id")
        monkeypatch.setenv(f"{prefix}_CLIENT_SECRET", f"test-{provider}-client-secret")
        monkeypatch.delenv(f"{prefix}_REDIRECT_URL", raising=False)

    _clear_caches()
    yield
    _clear_caches()


@pytest.fixture(autouse=True)
def _database(_test_settings: None) -> Generator[None, None, None]:
    from relnotes.db.session import get_engine
    from relnotes.models import Base

    engine = get_engine()
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def db_session(_database: None) -> Generator[Session, None, None]:
    """Session on the shared in-memory connection.

    The API uses the same connection, so commit or roll back before issuing
    requests through the TestClient.
    """
    from relnotes.db.session import get_sessionmaker

    SessionLocal = get_sessionmaker()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

