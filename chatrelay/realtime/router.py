from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Set

from chatrelay.config import settings
from chatrelay.persistence.message_log import MessageStore
from chatrelay.protocol.envelope import (
    MessageEnvelope,
    RegisterEnvelope,
    error_frame,
    registered_frame,
)
from chatrelay.protocol.types import ERR_IDENTITY_MISMATCH
from .connection import Connection
from .registry import Registry

log = logging.getLogger(__name__)


class Router:
    """Turns decoded envelopes into registry updates and deliveries.

    Delivery and persistence are two independent side effects of one
    ``message`` envelope: neither waits for nor depends on the other.
    """

    def __init__(
        self,
        registry: Registry,
        store: Optional[MessageStore] = None,
        *,
        ack_register: Optional[bool] = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.ack_register = settings.ACK_REGISTER if ack_register is None else ack_register
        self._pending: Set[asyncio.Task] = set()

    async def dispatch(self, conn: Connection, envelope) -> None:
        if isinstance(envelope, RegisterEnvelope):
            self._register(conn, envelope)
        elif isinstance(envelope, MessageEnvelope):
            self._relay(conn, envelope)
        else:
            log.debug("ignoring envelope from %s: %r", conn.tag(), envelope)

    def _register(self, conn: Connection, env: RegisterEnvelope) -> None:
        if conn.identity is not None and env.user_id != conn.identity:
            log.warning("%s authenticated as %s tried to register as %s",
                        conn.id, conn.identity, env.user_id)
            conn.enqueue(error_frame(ERR_IDENTITY_MISMATCH, "userId does not match session"))
            return
        self.registry.register(conn.id, env.user_id)
        if self.ack_register:
            conn.enqueue(registered_frame(env.user_id))

    def _relay(self, conn: Connection, env: MessageEnvelope) -> None:
        if conn.identity is not None and env.sender != conn.identity:
            log.warning("%s authenticated as %s tried to send as %s",
                        conn.id, conn.identity, env.sender)
            conn.enqueue(error_frame(ERR_IDENTITY_MISMATCH, "from does not match session"))
            return

        sent = self.registry.deliver(env.to, json.dumps(env.to_wire()))
        if sent:
            log.debug("message %s -> %s delivered to %d connection(s)", env.sender, env.to, sent)
        else:
            log.debug("message %s -> %s dropped, recipient offline", env.sender, env.to)

        self._persist(env)

    # persistence

    def _persist(self, env: MessageEnvelope) -> None:
        if self.store is None:
            return
        timestamp = datetime.now(timezone.utc)
        task = asyncio.create_task(self._append(env, timestamp))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _append(self, env: MessageEnvelope, timestamp: datetime) -> None:
        try:
            await self.store.append_message(env.sender, env.to, env.body, timestamp)
        except Exception as e:
            # never retried here; delivery already happened
            log.warning("failed to persist message %s -> %s: %s", env.sender, env.to, e)

    async def drain(self) -> None:
        """Wait for every persistence append started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
