import os
import sqlite3
import uuid

import pytest
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

load_dotenv(os.path.join(os.getcwd(), ".env"))
os.environ.setdefault("APP_ENV", "test")

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))

# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes  # noqa: E402

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


sqltypes.Uuid.bind_processor = _sqlite_uuid_bind_processor
sqltypes.Uuid.result_processor = _sqlite_uuid_result_processor

import app.models  # noqa: F401,E402
from app.db import Base, get_db  # noqa: E402
from app.models.helpdesk import Channel, ChannelType, Local, SlaPolicy, Tenant, User  # noqa: E402
from app.services.channels import credentials as credentials_module  # noqa: E402
from app.services.channels import registry as registry_module  # noqa: E402


def _resolve_test_database_url() -> str | None:
    raw_url = os.getenv("TEST_DATABASE_URL")
    if not raw_url:
        return None
    url = make_url(raw_url)
    if url.drivername.startswith("postgresql") and url.database != "helpdesk_test":
        url = url.set(database="helpdesk_test")
    return url.render_as_string(hide_password=False)


@pytest.fixture(scope="session")
def engine():
    database_url = _resolve_test_database_url()
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

        # pysqlite's own transaction handling breaks SAVEPOINT; let
        # SQLAlchemy emit BEGIN itself.
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture(autouse=True)
def _reset_channel_singletons(monkeypatch):
    monkeypatch.setattr(registry_module, "_registry", None)
    monkeypatch.setattr(credentials_module, "_resolver", None)


@pytest.fixture()
def dead_letters(monkeypatch):
    """Capture dead-letter writes instead of opening a second session."""
    from app.services.channels import ingestion

    written = []

    def _record(platform, raw_payload, error, **kwargs):
        written.append({"platform": platform, "payload": raw_payload, "error": error, **kwargs})

    monkeypatch.setattr(ingestion, "write_dead_letter", _record)
    return written


def _unique_email() -> str:
    return f"agent-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def tenant(db_session):
    tenant = Tenant(name="Acme Support")
    db_session.add(tenant)
    db_session.commit()
    db_session.refresh(tenant)
    return tenant


@pytest.fixture()
def local(db_session, tenant):
    local = Local(tenant_id=tenant.id, name="Main Street")
    db_session.add(local)
    db_session.commit()
    db_session.refresh(local)
    return local


@pytest.fixture()
def agent_user(db_session):
    user = User(email=_unique_email(), name="Agent Smith")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def sla_policy(db_session, tenant):
    policy = SlaPolicy(tenant_id=tenant.id, name="Default", first_response_minutes=60)
    db_session.add(policy)
    db_session.commit()
    db_session.refresh(policy)
    return policy


@pytest.fixture()
def whatsapp_channel(db_session, local):
    channel = Channel(
        local_id=local.id,
        type=ChannelType.whatsapp,
        display_name="WhatsApp Main",
        meta={"phoneId": "1098765", "accessToken": "wa-token"},
    )
    db_session.add(channel)
    db_session.commit()
    db_session.refresh(channel)
    return channel


@pytest.fixture()
def instagram_channel(db_session, local):
    channel = Channel(
        local_id=local.id,
        type=ChannelType.instagram,
        display_name="Instagram",
        meta={"pageId": "page_1", "accessToken": "ig-token"},
    )
    db_session.add(channel)
    db_session.commit()
    db_session.refresh(channel)
    return channel


@pytest.fixture()
def client(db_session):
    from fastapi.testclient import TestClient

    from app.main import app

    def _get_db_override():
        yield db_session

    app.dependency_overrides[get_db] = _get_db_override
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
