from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event, insert, text

from crm import models
from crm.config import Settings
from crm.database import Base
from crm.main import create_app
from crm.security import create_access_token, hash_password

ADMIN_ID = 1
ALICE_ID = 2
BOB_ID = 3

ADMIN_HASH = hash_password("admin-pass")
ALICE_HASH = hash_password("alice-pass")
BOB_HASH = hash_password("bob-pass")


@pytest.fixture()
def test_settings():
    settings = Settings()
    settings.database_url = "sqlite://"
    settings.jwt_secret = "test-secret"
    settings.cors_origins = []
    return settings


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def configure_sqlite(dbapi_conn, _):
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works with pysqlite.
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def begin_transaction(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    with engine.begin() as conn:
        conn.execute(
            insert(models.users_table),
            [
                {"id": ADMIN_ID, "username": "admin", "password": ADMIN_HASH, "role": "admin"},
                {"id": ALICE_ID, "username": "alice", "password": ALICE_HASH, "role": "employee"},
                {"id": BOB_ID, "username": "bob", "password": BOB_HASH, "role": "employee"},
            ],
        )
    yield engine
    engine.dispose()


@pytest.fixture()
def app(test_settings, engine):
    return create_app(test_settings, engine)


@pytest.fixture()
def client(app):
    client = TestClient(app)
    try:
        yield client
    finally:
        client.close()


@pytest.fixture()
def auth_headers(test_settings):
    def make(user_id=ADMIN_ID, username="admin", role="admin"):
        token = create_access_token(test_settings, user_id, username, role)
        return {"Authorization": f"Bearer {token}"}

    return make


@pytest.fixture()
def admin_headers(auth_headers):
    return auth_headers()


@pytest.fixture()
def alice_headers(auth_headers):
    return auth_headers(ALICE_ID, "alice", "employee")


def seed_customer(engine, customer_id, name, **values):
    now = datetime.now(timezone.utc)
    row = {
        "id": customer_id,
        "name": name,
        "status": "pending",
        "archived": False,
        "created_at": now,
        "updated_at": now,
    }
    row.update(values)
    with engine.begin() as conn:
        conn.execute(insert(models.customers_table).values(**row))


def fetch_customers(engine):
    with engine.begin() as conn:
        return conn.execute(text("SELECT * FROM customers ORDER BY id")).mappings().all()
