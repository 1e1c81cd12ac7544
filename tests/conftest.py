import mongomock
import pytest
from fastapi.testclient import TestClient

from account_service.api.server import create_app
from account_service.auth.security import get_password_hasher
from account_service.config import Config
from account_service.db import MongoConnector, ensure_indexes
from account_service.lifecycle import Lifecycle


TEST_ROUNDS = 1000


def mongomock_factory(uri, **kwargs):
    return mongomock.MongoClient()


@pytest.fixture
def cfg():
    return Config(
        APP_ENV="test",
        AUTH_JWT_SECRET="test-secret",
        AUTH_JWT_ISSUER="test-issuer",
        AUTH_ACCESS_TOKEN_TTL_SECONDS=900,
        AUTH_REFRESH_TOKEN_TTL_SECONDS=3600,
        AUTH_HASH_ROUNDS=TEST_ROUNDS,
        MONGODB_URI="mongodb://localhost:27017/accounts-test",
        MONGODB_DB="accounts-test",
        DB_MAX_RETRIES=3,
        DB_RETRY_DELAY_MS=0,
    )


@pytest.fixture
def hasher():
    return get_password_hasher(TEST_ROUNDS)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["accounts-test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def connector(cfg):
    return MongoConnector(cfg, client_factory=mongomock_factory, sleep=lambda s: None)


@pytest.fixture
def app(cfg, connector):
    return create_app(cfg, connector=connector, lifecycle=Lifecycle())


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, username="alice", email="alice@example.com", password="password123", **extra):
    r = client.post(
        "/api/users/register",
        json={"username": username, "email": email, "password": password, **extra},
    )
    assert r.status_code == 201, r.text
    return r.json()
