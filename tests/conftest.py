import os
from unittest.mock import Mock

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.database import Base, get_db
from app.main import app
from factories import ADMIN_TOKEN, APP_SECRET


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT support
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Real SQLite session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, tmp_path):
    """Set test configuration."""
    monkeypatch.setattr(settings, "meta_app_secret", APP_SECRET)
    monkeypatch.setattr(settings, "webhook_signature_required", True)
    monkeypatch.setattr(settings, "media_signing_secret", "test-media-secret")
    monkeypatch.setattr(settings, "media_storage_dir", str(tmp_path / "media"))
    monkeypatch.setattr(settings, "media_public_base_url", "https://api.example.com")
    monkeypatch.setattr(settings, "admin_api_token", ADMIN_TOKEN)
    monkeypatch.setattr(settings, "openai_api_key", None)
    return settings


@pytest.fixture
def dispatcher():
    return Mock()


@pytest.fixture
def client(db_session, dispatcher):
    original_dispatcher = app.state.auto_reply_dispatcher
    app.dependency_overrides[get_db] = lambda: db_session
    app.state.auto_reply_dispatcher = dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.auto_reply_dispatcher = original_dispatcher

