"""Live mapping from user identity to connected transport sessions.

    users       : Map<UserId, Set<ConnectionId>>
    connections : Map<ConnectionId, Connection>
    user_of     : Map<ConnectionId, UserId>        # back-reference, O(1) cleanup

One identity per connection: registering a connection again under another
UserId moves it. Every ConnectionId under ``users`` is present in
``connections``; empty user sets are dropped.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Set

from chatrelay.errors import DuplicateConnection, UnknownConnection
from .connection import Connection, ConnectionId

log = logging.getLogger(__name__)

UserId = str


class Registry:
    """Process-wide presence table. Created at server start, cleared at stop."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: Dict[ConnectionId, Connection] = {}
        self._users: Dict[UserId, Set[ConnectionId]] = {}
        self._user_of: Dict[ConnectionId, UserId] = {}

    def add_connection(self, conn: Connection) -> None:
        with self._lock:
            if conn.id in self._connections:
                raise DuplicateConnection(conn.id)
            self._connections[conn.id] = conn
        log.debug("connection added: %s", conn.id)

    def register(self, conn_id: ConnectionId, user_id: UserId) -> Optional[UserId]:
        """Associate a connection with a user. Returns the UserId it was moved from, if any."""
        with self._lock:
            conn = self._connections.get(conn_id)
            if conn is None:
                raise UnknownConnection(conn_id)

            previous = self._user_of.get(conn_id)
            if previous == user_id:
                return None
            if previous is not None:
                self._discard(previous, conn_id)

            self._users.setdefault(user_id, set()).add(conn_id)
            self._user_of[conn_id] = user_id
            conn.user_id = user_id

        if previous is not None:
            log.info("connection %s re-registered: %s -> %s", conn_id, previous, user_id)
        else:
            log.info("connection %s registered as %s", conn_id, user_id)
        return previous

    def unregister(self, conn_id: ConnectionId) -> Optional[Connection]:
        """Forget a connection. Unknown ids are a no-op."""
        with self._lock:
            conn = self._connections.pop(conn_id, None)
            user_id = self._user_of.pop(conn_id, None)
            if user_id is not None:
                self._discard(user_id, conn_id)
        return conn

    def _discard(self, user_id: UserId, conn_id: ConnectionId) -> None:
        # caller holds the lock
        conns = self._users.get(user_id)
        if conns is None:
            return
        conns.discard(conn_id)
        if not conns:
            del self._users[user_id]

    def connections_for(self, user_id: UserId) -> List[Connection]:
        with self._lock:
            return [self._connections[c] for c in self._users.get(user_id, ())]

    def deliver(self, user_id: UserId, data: str) -> int:
        """Fan ``data`` out to every live connection of ``user_id``.

        Lookup and enqueue happen under the lock, so a concurrent unregister
        either sees the send already queued or the connection already gone.
        Returns how many connections accepted the frame.
        """
        sent = 0
        with self._lock:
            for conn_id in self._users.get(user_id, ()):
                if self._connections[conn_id].enqueue(data):
                    sent += 1
        return sent

    def is_online(self, user_id: UserId) -> bool:
        with self._lock:
            return user_id in self._users

    def online_users(self) -> List[UserId]:
        with self._lock:
            return sorted(self._users)

    def user_of(self, conn_id: ConnectionId) -> Optional[UserId]:
        with self._lock:
            return self._user_of.get(conn_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, conn_id: object) -> bool:
        with self._lock:
            return conn_id in self._connections

    def clear(self) -> None:
        with self._lock:
            self._connections.clear()
            self._users.clear()
            self._user_of.clear()
