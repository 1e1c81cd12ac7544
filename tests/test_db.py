import dataclasses
import logging
from types import SimpleNamespace

import mongomock
import pytest
from pymongo.errors import ServerSelectionTimeoutError

from account_service.db import (
    ACCOUNTS,
    ConnectionState,
    MongoConnector,
    _TopologyListener,
    _redact,
    ensure_indexes,
)
from account_service.errors import DatastoreUnavailable

from conftest import mongomock_factory


class FlakyFactory:
    """Fails the first ``failures`` calls, then hands out mongomock clients."""

    def __init__(self, failures):
        self.failures = failures
        self.calls = []

    def __call__(self, uri, **kwargs):
        self.calls.append((uri, kwargs))
        if len(self.calls) <= self.failures:
            raise ServerSelectionTimeoutError("no servers available")
        return mongomock.MongoClient()


class TestConnect:
    def test_connects_and_passes_pool_options(self, cfg):
        factory = FlakyFactory(failures=0)
        c = MongoConnector(cfg, client_factory=factory, sleep=lambda s: None)
        result = c.connect()

        assert result.ok and result.attempts == 1
        assert c.state is ConnectionState.CONNECTED
        uri, kwargs = factory.calls[0]
        assert uri == cfg.MONGODB_URI
        assert kwargs["maxPoolSize"] == cfg.DB_MAX_POOL_SIZE
        assert kwargs["minPoolSize"] == cfg.DB_MIN_POOL_SIZE
        assert kwargs["serverSelectionTimeoutMS"] == cfg.DB_SERVER_SELECTION_TIMEOUT_MS
        assert kwargs["socketTimeoutMS"] == cfg.DB_SOCKET_TIMEOUT_MS
        assert isinstance(kwargs["event_listeners"][0], _TopologyListener)
        assert c.database.name == cfg.MONGODB_DB

    def test_second_connect_reuses_client(self, connector):
        connector.connect()
        db = connector.database
        again = connector.connect()
        assert again.ok and again.attempts == 0
        assert connector.database.client is db.client

    def test_retries_with_linear_backoff(self, cfg):
        cfg = dataclasses.replace(cfg, DB_MAX_RETRIES=5, DB_RETRY_DELAY_MS=5000)
        sleeps = []
        factory = FlakyFactory(failures=3)
        c = MongoConnector(cfg, client_factory=factory, sleep=sleeps.append)

        result = c.connect()
        assert result.ok and result.attempts == 4
        assert sleeps == [5.0, 10.0, 15.0]
        assert c.state is ConnectionState.CONNECTED

    def test_gives_up_after_max_retries(self, cfg, caplog):
        cfg = dataclasses.replace(cfg, DB_MAX_RETRIES=5, DB_RETRY_DELAY_MS=5000)
        sleeps = []
        factory = FlakyFactory(failures=100)
        c = MongoConnector(cfg, client_factory=factory, sleep=sleeps.append)

        with caplog.at_level(logging.INFO, logger="account_service"):
            result = c.connect()

        assert not result.ok
        assert result.attempts == 5
        assert isinstance(result.error, ServerSelectionTimeoutError)
        assert len(factory.calls) == 5
        assert sleeps == [5.0, 10.0, 15.0, 20.0]
        assert c.state is ConnectionState.DISCONNECTED
        assert "Max retries reached" in caplog.text
        with pytest.raises(DatastoreUnavailable):
            c.database

    def test_database_unavailable_before_connect(self, connector):
        with pytest.raises(DatastoreUnavailable):
            connector.database


def _server(address, server_type, error=None):
    return SimpleNamespace(address=address, server_type=server_type, error=error)


def _topology(*servers):
    """Stand-in for a pymongo TopologyDescription over the given servers."""
    return SimpleNamespace(
        topology_type_name="ReplicaSetWithPrimary"
        if any(s.server_type == "RSPrimary" for s in servers)
        else "ReplicaSetNoPrimary",
        has_writable_server=lambda: any(s.server_type == "RSPrimary" for s in servers),
        server_descriptions=lambda: {s.address: s for s in servers},
    )


def _changed(*servers):
    return SimpleNamespace(new_description=_topology(*servers))


PRIMARY = ("db-a", 27017)
SECONDARY = ("db-b", 27017)


class TestTopologyEvents:
    def test_disconnect_and_reconnect(self, connector, caplog):
        connector.connect()
        with caplog.at_level(logging.INFO, logger="account_service"):
            connector.mark_unavailable("timeout")
            assert connector.state is ConnectionState.DISCONNECTED
            connector.mark_unavailable("timeout")
            assert connector.state is ConnectionState.RECONNECTING
            connector.mark_unavailable("timeout")
            assert connector.state is ConnectionState.RECONNECTING
            connector.mark_available()
            assert connector.state is ConnectionState.CONNECTED

        assert caplog.text.count("MongoDB disconnected") == 1
        assert "reconnected successfully" in caplog.text

    def test_available_while_connected_is_quiet(self, connector, caplog):
        connector.connect()
        with caplog.at_level(logging.INFO, logger="account_service"):
            connector.mark_available()
        assert connector.state is ConnectionState.CONNECTED
        assert "reconnected" not in caplog.text

    def test_one_member_down_is_not_a_disconnect(self, connector, caplog):
        connector.connect()
        listener = _TopologyListener(connector)
        with caplog.at_level(logging.INFO, logger="account_service"):
            for _ in range(3):
                listener.description_changed(
                    _changed(
                        _server(PRIMARY, "RSPrimary"),
                        _server(SECONDARY, "Unknown", error=ServerSelectionTimeoutError("db-b timed out")),
                    )
                )
                assert connector.state is ConnectionState.CONNECTED
                listener.description_changed(_changed(_server(PRIMARY, "RSPrimary"), _server(SECONDARY, "RSSecondary")))
                assert connector.state is ConnectionState.CONNECTED

        assert "MongoDB disconnected" not in caplog.text
        assert "reconnected" not in caplog.text

    def test_losing_every_writable_member_is_logged_once(self, connector, caplog):
        connector.connect()
        listener = _TopologyListener(connector)
        down = _changed(
            _server(PRIMARY, "Unknown", error=ServerSelectionTimeoutError("db-a timed out")),
            _server(SECONDARY, "RSSecondary"),
        )
        with caplog.at_level(logging.INFO, logger="account_service"):
            listener.description_changed(down)
            assert connector.state is ConnectionState.DISCONNECTED
            listener.description_changed(down)
            assert connector.state is ConnectionState.RECONNECTING
            listener.description_changed(_changed(_server(PRIMARY, "RSSecondary"), _server(SECONDARY, "RSPrimary")))
            assert connector.state is ConnectionState.CONNECTED

        assert caplog.text.count("MongoDB disconnected") == 1
        assert "db-a timed out" in caplog.text
        assert caplog.text.count("reconnected successfully") == 1

    def test_events_do_not_revive_a_closed_connector(self, connector):
        connector.connect()
        connector.close()
        listener = _TopologyListener(connector)
        listener.description_changed(_changed(_server(PRIMARY, "Unknown")))
        listener.description_changed(_changed(_server(PRIMARY, "RSPrimary")))
        assert connector.state is ConnectionState.CLOSED


class TestClose:
    def test_close_is_idempotent(self, connector, caplog):
        connector.connect()
        with caplog.at_level(logging.INFO, logger="account_service"):
            connector.close()
            connector.close()
        assert connector.state is ConnectionState.CLOSED
        assert caplog.text.count("MongoDB connection closed successfully") == 1
        with pytest.raises(DatastoreUnavailable):
            connector.database
        with pytest.raises(DatastoreUnavailable):
            connector.connect()

    def test_close_without_connect(self, cfg):
        c = MongoConnector(cfg, client_factory=mongomock_factory)
        c.close()
        assert c.state is ConnectionState.CLOSED

    def test_close_error_is_logged(self, cfg, caplog):
        class BrokenClose(mongomock.MongoClient):
            def close(self):
                raise RuntimeError("boom")

        c = MongoConnector(cfg, client_factory=lambda uri, **kw: BrokenClose(), sleep=lambda s: None)
        c.connect()
        with caplog.at_level(logging.ERROR, logger="account_service"):
            c.close()
        assert c.state is ConnectionState.CLOSED
        assert "Error closing MongoDB connection" in caplog.text


def test_redact_strips_credentials():
    assert _redact("mongodb://user:pw@db.example.com:27017/app") == "mongodb://***@db.example.com:27017/app"
    assert _redact("mongodb://localhost:27017/app") == "mongodb://localhost:27017/app"


def test_ensure_indexes_enforces_uniqueness(db):
    ensure_indexes(db)  # safe to repeat
    names = set(db[ACCOUNTS].index_information())
    assert {"email_unique", "username_unique", "role", "is_active", "created_at_desc"} <= names
