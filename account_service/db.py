"""MongoDB connectivity.

One pooled client per process, established with a bounded retry loop and
supervised through driver topology events. Once connected, the driver's own
pool handles reconnection; this module only tracks and logs the state.

State machine::

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> DISCONNECTED -> RECONNECTING -> CONNECTED   (no writable server)
    any -> SHUTTING_DOWN -> CLOSED
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.monitoring import (
    TopologyClosedEvent,
    TopologyDescriptionChangedEvent,
    TopologyListener,
    TopologyOpenedEvent,
)

from account_service.config import Config
from account_service.errors import DatastoreUnavailable
from account_service.util.retry import RetryResult, linear_backoff, retry


logger = logging.getLogger(__name__)

ACCOUNTS = "accounts"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


_TERMINAL = (ConnectionState.SHUTTING_DOWN, ConnectionState.CLOSED)


class _TopologyListener(TopologyListener):
    """Maps topology changes to connector state.

    The deployment counts as reachable while any server is writable, so one
    replica-set member going down does not read as a disconnect.
    """

    def __init__(self, connector: "MongoConnector"):
        self._connector = connector

    def opened(self, event: TopologyOpenedEvent) -> None:
        pass

    def description_changed(self, event: TopologyDescriptionChangedEvent) -> None:
        new = event.new_description
        if new.has_writable_server():
            self._connector.mark_available()
            return
        errors = [str(sd.error) for sd in new.server_descriptions().values() if sd.error is not None]
        self._connector.mark_unavailable(errors[0] if errors else new.topology_type_name)

    def closed(self, event: TopologyClosedEvent) -> None:
        pass


class MongoConnector:
    def __init__(
        self,
        cfg: Config,
        *,
        client_factory: Callable[..., Any] = MongoClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self._client_factory = client_factory
        self._sleep = sleep
        self._client: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def database(self) -> Database:
        """The pooled database handle shared by every operation."""
        if self._client is None or self._state in _TERMINAL:
            raise DatastoreUnavailable()
        return self._client[self.cfg.MONGODB_DB]

    def _transition(self, new: ConnectionState, *, allowed_from: tuple[ConnectionState, ...] = ()) -> bool:
        """Move to new state; returns False (and changes nothing) if not allowed or unchanged."""
        with self._state_lock:
            old = self._state
            if old == new:
                return False
            if allowed_from and old not in allowed_from:
                return False
            self._state = new
        logger.debug("connection state %s -> %s", old.value, new.value)
        return True

    def _open_client(self) -> Any:
        client = self._client_factory(
            self.cfg.MONGODB_URI,
            maxPoolSize=self.cfg.DB_MAX_POOL_SIZE,
            minPoolSize=self.cfg.DB_MIN_POOL_SIZE,
            serverSelectionTimeoutMS=self.cfg.DB_SERVER_SELECTION_TIMEOUT_MS,
            socketTimeoutMS=self.cfg.DB_SOCKET_TIMEOUT_MS,
            event_listeners=[_TopologyListener(self)],
        )
        try:
            # Forces server selection so an unreachable server fails here.
            client.admin.command("ping")
        except Exception:
            client.close()
            raise
        return client

    def connect(self) -> RetryResult[Any]:
        """Establish the pooled client, retrying with linear backoff.

        Returns the retry result; deciding what to do when every attempt
        failed (normally: exit the process) is the caller's job.
        """
        if self._state in _TERMINAL:
            raise DatastoreUnavailable("Connector has been shut down")
        if self._client is not None:
            return RetryResult(ok=True, attempts=0, value=self._client)

        self._transition(ConnectionState.CONNECTING)
        max_attempts = self.cfg.DB_MAX_RETRIES

        def _on_error(attempt: int, err: BaseException, delay: Optional[float]) -> None:
            logger.error("MongoDB connection attempt %d/%d failed: %s", attempt, max_attempts, err)
            if delay is not None:
                logger.info("Retrying in %.0f seconds...", delay)

        result = retry(
            self._open_client,
            max_attempts=max_attempts,
            backoff=linear_backoff(self.cfg.DB_RETRY_DELAY_MS / 1000.0),
            sleep=self._sleep,
            on_error=_on_error,
        )
        if not result.ok:
            self._transition(ConnectionState.DISCONNECTED)
            logger.error("Max retries reached. Could not connect to MongoDB.")
            return result

        self._client = result.value
        if self._transition(ConnectionState.CONNECTED):
            logger.info("MongoDB connected to %s (db=%s)", _redact(self.cfg.MONGODB_URI), self.cfg.MONGODB_DB)
        return result

    def mark_unavailable(self, reason: Any = None) -> None:
        # Losing the last writable server is the "disconnected" transition;
        # further changes without one mean the driver is still trying.
        if self._transition(ConnectionState.DISCONNECTED, allowed_from=(ConnectionState.CONNECTED,)):
            logger.warning("MongoDB disconnected (%s). The driver will attempt to reconnect.", reason)
            return
        self._transition(ConnectionState.RECONNECTING, allowed_from=(ConnectionState.DISCONNECTED,))

    def mark_available(self) -> None:
        if self._transition(
            ConnectionState.CONNECTED,
            allowed_from=(ConnectionState.DISCONNECTED, ConnectionState.RECONNECTING),
        ):
            logger.info("MongoDB reconnected successfully")

    def close(self) -> None:
        """Close every pooled connection. Safe to call more than once."""
        with self._state_lock:
            if self._state in _TERMINAL:
                return
            self._state = ConnectionState.SHUTTING_DOWN
        logger.info("Closing MongoDB connection gracefully...")
        client, self._client = self._client, None
        try:
            if client is not None:
                client.close()
            logger.info("MongoDB connection closed successfully")
        except Exception as e:
            logger.error("Error closing MongoDB connection: %s", e)
        finally:
            with self._state_lock:
                self._state = ConnectionState.CLOSED


def _redact(uri: str) -> str:
    """Strip credentials from a connection string before logging it."""
    if "@" not in uri:
        return uri
    scheme, _, rest = uri.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


def ensure_indexes(db: Database) -> None:
    coll = db[ACCOUNTS]
    coll.create_index([("email", ASCENDING)], unique=True, name="email_unique")
    coll.create_index([("username", ASCENDING)], unique=True, name="username_unique")
    coll.create_index([("role", ASCENDING)], name="role")
    coll.create_index([("is_active", ASCENDING)], name="is_active")
    coll.create_index([("created_at", DESCENDING)], name="created_at_desc")
